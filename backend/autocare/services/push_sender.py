import logging
import os
from threading import Lock
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# FCM error text that means the device token will never work again.
_STALE_TOKEN_MARKERS = ("registration token", "invalid argument", "not registered")


class PushSender:
    """Firebase Cloud Messaging channel for notification pushes.

    Disabled unless FIREBASE_CREDENTIALS_PATH points at a service-account file.
    Delivery is best effort: send failures are logged and reported as no stale tokens.
    """

    def __init__(self, credentials_path: Optional[str] = None):
        self._lock = Lock()
        self._credentials_path = credentials_path
        self._initialized = False
        self._enabled = False
        self._messaging = None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            credentials_path = (self._credentials_path or os.getenv("FIREBASE_CREDENTIALS_PATH", "")).strip()
            self._initialized = True
            if not credentials_path:
                logger.info("Push sender disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging

                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(credentials.Certificate(credentials_path))
                self._messaging = messaging
                self._enabled = True
                logger.info("Push sender initialized")
            except Exception:
                logger.exception("Push sender disabled: Firebase init failed")

    def send(self, tokens: List[str], title: str, body: str, data: Dict[str, str]) -> List[str]:
        """Push to every token and return the tokens FCM reported as stale."""
        self._ensure_initialized()
        if not self._enabled or not tokens:
            return []
        assert self._messaging is not None
        try:
            message = self._messaging.MulticastMessage(
                notification=self._messaging.Notification(title=title, body=body),
                tokens=tokens,
                data=data,
            )
            batch = self._messaging.send_each_for_multicast(message)
        except Exception:
            logger.exception("Push send failed for %d device(s)", len(tokens))
            return []
        stale: List[str] = []
        for token, response in zip(tokens, batch.responses):
            if response.success:
                continue
            error_text = str(response.exception).lower() if response.exception else ""
            if any(marker in error_text for marker in _STALE_TOKEN_MARKERS):
                stale.append(token)
        return stale


push_sender = PushSender()
