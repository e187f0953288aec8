"""Infrastructure modules for perp-agent"""

from .notifications import EmailNotifier, NotificationConfig  # noqa: F401
from .storage import InMemoryRepository, SQLiteRepository, create_repository  # noqa: F401

__all__ = [
	"EmailNotifier",
	"NotificationConfig",
	"InMemoryRepository",
	"SQLiteRepository",
	"create_repository",
]
