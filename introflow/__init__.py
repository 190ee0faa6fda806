"""IntroFlow: asynchronous coordination engine for introduction agents."""

__version__ = "0.1.0"
