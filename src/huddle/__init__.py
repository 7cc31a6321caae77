"""
Huddle: meeting audio capture and live transcription streaming.

Captures tab/system loopback, microphone and remote peer audio, mixes it into a single
signal, cuts it into sequenced chunks and streams them to a transcription backend over a
websocket, falling back to buffered HTTP uploads when the socket is unavailable.
"""

__version__ = "0.3.0"
