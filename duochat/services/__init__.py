"""Services package initialization."""
from duochat.services.chat_engine import ChatEngine
from duochat.services.minio_client import BlobStorage
from duochat.services.push_notifier import PushNotifier

__all__ = ["ChatEngine", "BlobStorage", "PushNotifier"]
