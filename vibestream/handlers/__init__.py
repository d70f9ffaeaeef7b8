from vibestream.handlers.stream import AUDIO_SERVICE, routes

__all__ = ["AUDIO_SERVICE", "routes"]
