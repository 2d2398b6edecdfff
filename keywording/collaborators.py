"""
Interfaces of the external services the pipeline talks to around a run.

Credits and processing history live outside this package; the pipeline
only needs these narrow async interfaces. In-memory versions are provided
for local runs and tests.
"""
import logging
import uuid
from typing import Dict, List, Optional, Protocol

from .models import Metadata

logger = logging.getLogger(__name__)


class CreditLedger(Protocol):
    async def has_credits(self, required: int) -> bool:
        ...

    async def deduct(self, amount: int, description: str = "Image processing") -> bool:
        ...


class SessionRecorder(Protocol):
    async def create_session(self, name: str) -> Optional[str]:
        ...

    async def record_image(self, session_id: str, display_name: str, status: str,
                           metadata: Optional[Metadata] = None) -> None:
        ...

    async def update_session_stats(self, session_id: str, success_count: int,
                                   failure_count: int, credits_used: int) -> bool:
        ...


class InMemoryCreditLedger:
    """Credit balance kept in process memory"""

    def __init__(self, balance: int = 0):
        self.balance = balance
        self.history: List[Dict[str, object]] = []

    async def has_credits(self, required: int) -> bool:
        return self.balance >= required

    async def deduct(self, amount: int, description: str = "Image processing") -> bool:
        if amount > self.balance:
            logger.warning(
                f"Cannot deduct {amount} credits, balance is {self.balance}")
            return False
        self.balance -= amount
        self.history.append({'amount': -amount, 'description': description})
        return True


class InMemorySessionRecorder:
    """Processing history kept in process memory"""

    def __init__(self):
        self.sessions: Dict[str, Dict[str, object]] = {}

    async def create_session(self, name: str) -> Optional[str]:
        session_id = str(uuid.uuid4())
        self.sessions[session_id] = {
            'name': name, 'images': [], 'stats': None}
        return session_id

    async def record_image(self, session_id: str, display_name: str, status: str,
                           metadata: Optional[Metadata] = None) -> None:
        self.sessions[session_id]['images'].append({
            'file_name': display_name,
            'status': status,
            'category': metadata.category if metadata else None,
        })

    async def update_session_stats(self, session_id: str, success_count: int,
                                   failure_count: int, credits_used: int) -> bool:
        self.sessions[session_id]['stats'] = {
            'success_count': success_count,
            'failure_count': failure_count,
            'credits_used': credits_used,
        }
        return True
