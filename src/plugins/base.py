"""
Core plugin types and dataclasses.

This module contains shared types used across the plugin system.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
import logging

from models import NamespacedName

logger = logging.getLogger(__name__)


@dataclass
class ConnectionNotification:
    """
    Message pushed by an adaptor connection.

    ``data`` carries status the adaptor reported for the device. A
    notification with ``closed`` set means the connection is gone;
    ``error`` explains why when it closed abnormally.
    """

    key: NamespacedName
    data: Dict[str, Any] = field(default_factory=dict)
    closed: bool = False
    error: Optional[str] = None


# (notification) -> None, called by a connection for each message
NotifyCallback = Callable[[ConnectionNotification], Awaitable[None]]
