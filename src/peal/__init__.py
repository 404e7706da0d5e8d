"""Plan / execute / address-findings loop over a markdown task plan."""

__version__ = "0.4.0"
