"""Service layer for the VoiceGate API."""
