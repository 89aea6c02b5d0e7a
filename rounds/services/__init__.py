"""
Services package for the Rounds core.

Cross-cutting runtime services shared by the operations layer.
"""

from .base import BaseService
from .notifications import ChangeEvent, NotificationHub, Topics

__all__ = ['BaseService', 'ChangeEvent', 'NotificationHub', 'Topics']
