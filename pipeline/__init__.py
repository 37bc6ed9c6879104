"""Transcription orchestration, summary chaining and the staged media pipeline."""
