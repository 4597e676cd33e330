"""Central model registry: import all models so create_all sees every table."""

from procurement.database import Base  # noqa: F401

from procurement.models.purchase_order import (  # noqa: F401
    PurchaseOrder,
    PoLineItem,
    PoStatusTransition,
)
from procurement.models.receipt import Receipt, ReceiptLineItem, StockInstruction  # noqa: F401
from procurement.models.approval import Approval  # noqa: F401
from procurement.models.audit_log import AuditLog  # noqa: F401
from procurement.models.product import Product, StockMovement  # noqa: F401
