"""Real-time call assistant: recording, streaming transcription, reply suggestions."""
