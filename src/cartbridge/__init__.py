"""cartbridge - storefront backend proxying an upstream commerce platform."""

__version__ = "0.1.0"
