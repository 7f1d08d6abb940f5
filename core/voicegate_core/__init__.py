"""VoiceGate core: state store, plan catalogue, webhook security and sync policy."""

__version__ = "0.4.0"
