from .base import BaseModel, db, utcnow
from .identity import IdentityMap
from .meta import (
    FileLineage,
    LineageStatus,
    PipelineRun,
    PipelineRunStatus,
    SourceSystem,
    new_uuid,
)
from .raw import RawRecord
from .silver import (
    TRANSACTION_MODELS,
    Activity,
    Communication,
    Contact,
    ContactTag,
    Donation,
    Invoice,
    Note,
    Order,
    Payment,
    Product,
    Subscription,
)

__all__ = [
    "db",
    "BaseModel",
    "utcnow",
    "new_uuid",
    "SourceSystem",
    "FileLineage",
    "LineageStatus",
    "PipelineRun",
    "PipelineRunStatus",
    "RawRecord",
    "Contact",
    "Donation",
    "Invoice",
    "Payment",
    "Order",
    "Subscription",
    "Product",
    "Note",
    "Communication",
    "Activity",
    "ContactTag",
    "TRANSACTION_MODELS",
    "IdentityMap",
]
