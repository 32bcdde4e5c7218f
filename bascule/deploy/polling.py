from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from bascule.deploy.errors import Cancelled


class CancelToken:
    """Jeton d'interruption opérateur.

    Les attentes passent par `wait()` (timer annulable) au lieu de `time.sleep`,
    ce qui réveille immédiatement une boucle de polling lors d'un `cancel()`.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "interruption opérateur") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or "annulé")

    def wait(self, seconds: float) -> None:
        """Attend `seconds`, lève Cancelled si le jeton est annulé entre-temps."""

        if seconds > 0:
            self._event.wait(seconds)
        self.raise_if_cancelled()


def poll_until(
    predicate: Callable[[], bool],
    *,
    interval: float,
    timeout: float,
    cancel: Optional[CancelToken] = None,
    on_retry: Optional[Callable[[int], None]] = None,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Évalue `predicate` toutes les `interval` secondes jusqu'au succès ou à `timeout`.

    Le prédicat est toujours évalué au moins une fois. Renvoie False à
    l'expiration ; lève Cancelled si le jeton est annulé pendant une attente.
    """

    token = cancel or CancelToken()
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        if predicate():
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        if on_retry is not None:
            on_retry(attempt)
        token.wait(min(interval, remaining))


def retry(
    action: Callable[[], bool],
    *,
    attempts: int,
    interval: float,
    cancel: Optional[CancelToken] = None,
    on_retry: Optional[Callable[[int], None]] = None,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Variante bornée en nombre de tentatives (sondes HTTP).

    Avec `deadline` (instant absolu de `clock`), les tentatives s'arrêtent
    aussi à cette échéance ; la première a toujours lieu.
    """

    token = cancel or CancelToken()
    for attempt in range(1, attempts + 1):
        if action():
            return True
        if attempt == attempts:
            break
        wait = interval
        if deadline is not None:
            remaining = deadline - clock()
            if remaining <= 0:
                break
            wait = min(interval, remaining)
        if on_retry is not None:
            on_retry(attempt)
        token.wait(wait)
    return False
