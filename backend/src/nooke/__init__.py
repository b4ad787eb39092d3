"""Room and audio-session coordination for Nooke clients."""

__version__ = "0.1.0"
