"""Desktop-side bridge for talking to ACP agents over stdio."""

__version__ = "0.1.0"
