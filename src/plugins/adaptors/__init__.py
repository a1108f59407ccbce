"""
Adaptor plugins.

Built-in adaptors: an in-process dummy adaptor and an HTTP relay to an
external adaptor process.
"""

from plugins.adaptors.base import AdaptorError, AdaptorPlugin, Connection
from plugins.adaptors.dummy import DUMMY_ADAPTOR_NAME, DummyAdaptor
from plugins.adaptors.http import HTTP_ADAPTOR_NAME, HTTPAdaptor

__all__ = [
    "AdaptorError",
    "AdaptorPlugin",
    "Connection",
    "DUMMY_ADAPTOR_NAME",
    "DummyAdaptor",
    "HTTP_ADAPTOR_NAME",
    "HTTPAdaptor",
]
