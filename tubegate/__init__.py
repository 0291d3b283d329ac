"""YouTube media gateway: metadata, audio/video streaming and a disk cache."""

__version__ = "2.0.0"
SERVICE_NAME = "tubegate YouTube API"
