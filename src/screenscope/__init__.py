"""screenscope: design screens to scope analysis and shell stories."""

__version__ = "0.1.0"
