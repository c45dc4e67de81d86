"""External service clients used by bot sessions.

Transcription (OpenAI audio API), transcript persistence (main server or
in-memory) and lifecycle webhook notifications.
"""
