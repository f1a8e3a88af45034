"""SMS channel: provider REST client and fixed-interval poll supervisor."""

from .client import BulkSmsClient
from .poller import SmsPollSupervisor

__all__ = ["BulkSmsClient", "SmsPollSupervisor"]
