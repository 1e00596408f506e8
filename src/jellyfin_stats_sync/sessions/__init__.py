"""Live playback session tracking."""
