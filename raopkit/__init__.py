"""Receiver-side AirPlay audio, clock-sync and screen-mirroring streams."""

__version__ = "0.1.0"