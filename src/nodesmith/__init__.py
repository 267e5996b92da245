"""nodesmith: build Node.js from source on memory-constrained EL7 hosts."""

__version__ = "0.1.0"
