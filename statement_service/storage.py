"""In-memory persistence for saved transactions and password profiles."""
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Sequence

from .models import PasswordProfile, Transaction

logger = logging.getLogger(__name__)


class TransactionStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_user: Dict[str, List[Transaction]] = {}

    def get(self, user_id: str) -> List[Transaction]:
        with self._lock:
            return list(self._by_user.get(user_id, []))

    def save(self, user_id: str, transactions: Sequence[Transaction]) -> int:
        with self._lock:
            saved = self._by_user.setdefault(user_id, [])
            for t in transactions:
                # stored rows get their own ids; batch ids are only unique per batch
                saved.append(t.model_copy(update={"id": str(uuid.uuid4())}))
            return len(transactions)

    def replace(self, user_id: str, transactions: Sequence[Transaction]) -> None:
        with self._lock:
            self._by_user[user_id] = list(transactions)

    def delete_all(self, user_id: str) -> None:
        with self._lock:
            self._by_user.pop(user_id, None)


class PasswordProfileStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_user: Dict[str, Dict[str, PasswordProfile]] = {}
        self._secrets: Dict[str, str] = {}

    def list(self, user_id: str) -> List[PasswordProfile]:
        with self._lock:
            return list(self._by_user.get(user_id, {}).values())

    def add(self, user_id: str, name: str, secret: str) -> PasswordProfile:
        profile = PasswordProfile(
            id=str(uuid.uuid4()),
            name=name,
            createdAt=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            self._by_user.setdefault(user_id, {})[profile.id] = profile
            self._secrets[profile.id] = secret
        return profile

    def delete(self, user_id: str, profile_id: str) -> bool:
        with self._lock:
            removed = self._by_user.get(user_id, {}).pop(profile_id, None)
            if removed is None:
                return False
            self._secrets.pop(profile_id, None)
            return True

    def secret_for(self, user_id: str, profile_id: str) -> str:
        with self._lock:
            if profile_id not in self._by_user.get(user_id, {}):
                raise KeyError(profile_id)
            return self._secrets[profile_id]


class BatchPersister:
    """
    Completion handler for an upload batch.

    Hands the batch to ``save``; if that raises, the batch is kept in
    ``session_transactions`` instead of being lost.
    """

    def __init__(self, save: Callable[[List[Transaction]], object]) -> None:
        self._save = save
        self.session_transactions: List[Transaction] = []

    def __call__(self, transactions: List[Transaction]) -> bool:
        try:
            self._save(list(transactions))
        except Exception as exc:
            logger.error("Saving %d transactions failed, keeping them in session: %s", len(transactions), exc)
            self.session_transactions.extend(transactions)
            return False
        return True
