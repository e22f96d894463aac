"""Chess coach relay — engine-augmented chat streaming."""

__version__ = "0.1.0"
