"""ONVIF alert relay: device event ingestion, normalization and webhook alerts."""

__version__ = "0.1.0"
