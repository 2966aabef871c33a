"""Bootstrap local kind clusters with a fixed add-on stack."""

__version__ = "0.3.0"
