"""Trigger adapters that turn external events into runs."""

from .base import TriggerAdapter
from .form import FormTriggerAdapter
from .file import FileTriggerAdapter
from .email import EmailTriggerAdapter
from .webhook import WebhookTriggerAdapter
from .database import DatabaseChangeAdapter, DatabaseChangeEvent
from .manual import ManualRunAdapter
from .schedule import ScheduleTriggerAdapter

__all__ = [
    "TriggerAdapter",
    "FormTriggerAdapter",
    "FileTriggerAdapter",
    "EmailTriggerAdapter",
    "WebhookTriggerAdapter",
    "DatabaseChangeAdapter",
    "DatabaseChangeEvent",
    "ManualRunAdapter",
    "ScheduleTriggerAdapter",
]
