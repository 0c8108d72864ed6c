"""pipeforge — multi-step AI content generation pipelines."""

__version__ = "0.1.0"
