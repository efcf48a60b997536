"""Standing-wave and baseline correction for position-position-velocity cubes."""

__version__ = "0.1.0"
