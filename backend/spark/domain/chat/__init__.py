"""Chat domain exports."""

from .core import ChatCore
from .events import ChatError, ErrorCode
from .models import Actor, EphemeralPhoto, Message
from .router import EventRouter
from .session import Session

__all__ = [
	"Actor",
	"ChatCore",
	"ChatError",
	"EphemeralPhoto",
	"ErrorCode",
	"EventRouter",
	"Message",
	"Session",
]
