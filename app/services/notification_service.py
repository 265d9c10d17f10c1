import logging
import os
from typing import Any, Callable, Dict, List, Optional

import firebase_admin
from firebase_admin import messaging, credentials

from app.core.config import settings

logger = logging.getLogger(__name__)

Listener = Callable[[str, str, Dict[str, Any]], None]

# Events that also go out as a push notification: event -> (title, body)
PUSH_MESSAGES: Dict[str, tuple] = {
    "new-booking-request": ("New booking request", "A customer has requested your service."),
    "payment-received": ("Payment received", "Payment is held in escrow. Please accept or decline the request."),
    "booking-accepted": ("Booking accepted", "Your provider accepted the booking."),
    "booking-declined": ("Booking declined", "Your provider declined the booking."),
    "booking-started": ("Job started", "Your provider has started the job."),
    "booking-completed": ("Job completed", "The job is complete."),
    "booking-cancelled": ("Booking cancelled", "A booking was cancelled."),
    "payment-failed": ("Payment failed", "Your payment could not be processed."),
}


class NotificationService:
    """Fire-and-forget fan-out of booking events.

    ``emit`` hands the event to every registered listener (the socket layer
    subscribes here) and, for the events in ``PUSH_MESSAGES``, sends a push
    notification to the user's FCM topic. Failures are logged, never raised.
    """

    def __init__(self, credentials_path: Optional[str] = None):
        self.initialized = False
        self._listeners: List[Listener] = []
        credentials_path = settings.FIREBASE_CREDENTIALS_PATH if credentials_path is None else credentials_path
        if not credentials_path:
            logger.info("FIREBASE_CREDENTIALS_PATH not set. Push notifications will be mocked.")
            return
        try:
            # Check if already initialized (to avoid errors on reload)
            if not firebase_admin._apps:
                if not os.path.exists(credentials_path):
                    logger.warning(f"Firebase credentials not found at {credentials_path}. Push notifications will be mocked.")
                    return
                firebase_admin.initialize_app(credentials.Certificate(credentials_path))
                logger.info("Firebase Admin initialized successfully")
            self.initialized = True
        except Exception as e:
            logger.error(f"Firebase initialization error: {e}")

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, user_id: Optional[str], event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if not user_id:
            return
        payload = payload or {}
        for listener in list(self._listeners):
            try:
                listener(user_id, event, payload)
            except Exception as e:
                logger.warning(f"Listener failed for event {event} to user {user_id}: {e}")

        if event in PUSH_MESSAGES:
            title, body = PUSH_MESSAGES[event]
            self.send_push(user_id, title, body, {"event": event, **payload})

    def send_push(self, user_id: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> None:
        # data values must be strings
        str_data = {k: str(v) for k, v in (data or {}).items() if v is not None and not isinstance(v, (dict, list))}
        if not self.initialized:
            logger.info(f"[MOCK PUSH] To: user_{user_id} | Title: {title} | Body: {body} | Data: {str_data}")
            return

        try:
            message = messaging.Message(
                notification=messaging.Notification(
                    title=title,
                    body=body,
                ),
                data=str_data,
                topic=f"user_{user_id}",
            )
            message_id = messaging.send(message)
            logger.info(f"Sent push {message_id} to user {user_id}")
        except Exception as e:
            logger.error(f"Error sending push to user {user_id}: {e}")


# Global instance
notification_service = NotificationService()
