"""
In-memory inventory reservations

Short-lived holds on product quantity between "add to cart" and "order placed".
Holds are advisory: they never touch the persisted `count_in_stock`, and they
only coordinate checkouts handled by this process. Several instances need a
shared store with native TTL behind the same interface.
"""
import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

RESERVATION_TTL_SECONDS = 15 * 60
SWEEP_INTERVAL_SECONDS = 60


@dataclass
class Reservation:
    product_id: str
    quantity: int
    user_id: str
    expires_at: float


class InMemoryReservationStore:
    def __init__(self, clock: Callable[[], float] = time.time, ttl_seconds: float = RESERVATION_TTL_SECONDS,
                 autosweep: bool = True):
        self._clock = clock
        self._ttl = ttl_seconds
        self._reservations: Dict[str, Reservation] = {}
        # Route handlers may run on FastAPI's threadpool, so map mutations are locked
        self._lock = threading.RLock()
        self._autosweep = autosweep
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def __len__(self) -> int:
        return len(self._reservations)

    def total_reserved(self, product_id: str) -> int:
        now = self._clock()
        with self._lock:
            return sum(
                r.quantity for r in self._reservations.values()
                if r.product_id == product_id and r.expires_at > now
            )

    def effective_stock(self, product_id: str, actual_stock: int) -> int:
        return max(0, actual_stock - self.total_reserved(product_id))

    def create(self, product_id: str, quantity: int, user_id: str, available_stock: int) -> Optional[str]:
        """Hold `quantity` units of a product for a user.

        Returns the reservation key, or None when the stock left after
        other unexpired holds cannot cover the request.
        """
        self._start_sweeper()
        with self._lock:
            effective = available_stock - self.total_reserved(product_id)
            if effective < quantity:
                return None
            key = f"{user_id}:{product_id}:{uuid.uuid4().hex}"
            self._reservations[key] = Reservation(
                product_id=product_id,
                quantity=quantity,
                user_id=user_id,
                expires_at=self._clock() + self._ttl,
            )
        return key

    def release(self, key: str) -> bool:
        with self._lock:
            return self._reservations.pop(key, None) is not None

    def release_user(self, user_id: str) -> int:
        with self._lock:
            keys = [k for k, r in self._reservations.items() if r.user_id == user_id]
            for k in keys:
                del self._reservations[k]
        return len(keys)

    def extend(self, key: str) -> bool:
        with self._lock:
            reservation = self._reservations.get(key)
            if reservation is None:
                return False
            reservation.expires_at = self._clock() + self._ttl
        return True

    def is_valid(self, key: str) -> bool:
        with self._lock:
            reservation = self._reservations.get(key)
            return reservation is not None and reservation.expires_at > self._clock()

    def get(self, key: str) -> Optional[Reservation]:
        with self._lock:
            reservation = self._reservations.get(key)
            if reservation is None or reservation.expires_at <= self._clock():
                return None
            return replace(reservation)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, r in self._reservations.items() if r.expires_at <= now]
            for k in expired:
                del self._reservations[k]
        if expired:
            logger.debug("Reservation sweep purged %d expired holds", len(expired))
        return len(expired)

    def stop(self) -> None:
        self._stop.set()

    def _start_sweeper(self) -> None:
        if not self._autosweep or self._sweeper is not None:
            return
        with self._lock:
            if self._sweeper is not None:
                return
            self._sweeper = threading.Thread(target=self._sweep_forever, name="reservation-sweeper", daemon=True)
            self._sweeper.start()

    def _sweep_forever(self) -> None:
        while not self._stop.wait(SWEEP_INTERVAL_SECONDS):
            self.sweep()


store = InMemoryReservationStore()


def create_reservation(product_id: str, quantity: int, user_id: str, available_stock: int) -> Optional[str]:
    return store.create(product_id, quantity, user_id, available_stock)


def get_total_reserved(product_id: str) -> int:
    return store.total_reserved(product_id)


def get_effective_stock(product_id: str, actual_stock: int) -> int:
    return store.effective_stock(product_id, actual_stock)


def release_reservation(key: str) -> bool:
    return store.release(key)


def release_user_reservations(user_id: str) -> int:
    return store.release_user(user_id)


def extend_reservation(key: str) -> bool:
    return store.extend(key)


def is_reservation_valid(key: str) -> bool:
    return store.is_valid(key)


def get_reservation(key: str) -> Optional[Reservation]:
    return store.get(key)
