"""wagate -- keeps WhatsApp device sessions paired and alive behind an HTTP API."""

__version__ = "0.1.0"
