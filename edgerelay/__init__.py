"""Public HTTP front door that provisions, supervises and relays to a local backend."""

__version__ = "0.1.0"
