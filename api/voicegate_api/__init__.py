"""VoiceGate API: usage enforcement and resource reconciliation service."""

__version__ = "0.4.0"
