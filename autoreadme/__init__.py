"""autoreadme: regenerate a repository's README whenever code is pushed."""

__version__ = "1.0.0"
