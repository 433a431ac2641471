"""wakeline: scheduled agent wake-ups with lane-serialized execution."""

__version__ = "0.1.0"
