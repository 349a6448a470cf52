from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import NewType
from uuid import UUID, uuid4

from domain.base_types import TransactionId, UserId

ClassificationId = NewType("ClassificationId", UUID)


class ClassificationKind(StrEnum):
    OFFRAMP = "OFFRAMP"


class ClassificationStatus(StrEnum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


class TaxCategory(StrEnum):
    DISPOSAL_SALE = "DISPOSAL_SALE"
    TRANSFER_INTERNAL = "TRANSFER_INTERNAL"


@dataclass
class PendingClassification:
    """Review item for a human; it never changes the transactions it points at."""

    user_id: UserId
    transaction_id: TransactionId
    kind: ClassificationKind
    suggested_category: TaxCategory
    priority: int
    estimated_value: Decimal | None = None
    notes: str | None = None
    status: ClassificationStatus = ClassificationStatus.PENDING
    resolved_category: TaxCategory | None = None
    resolved_at: datetime | None = None
    id: ClassificationId = field(default_factory=lambda: ClassificationId(uuid4()))
