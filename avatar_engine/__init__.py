"""Avatar Engine: turn-taking coordinator for the brain-game avatar widget."""

__version__ = "1.0.0"
