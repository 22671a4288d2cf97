from farmroute.models.user import User, UserRole
from farmroute.models.order import Order, OrderItem, OrderStatus
from farmroute.models.delivery_batch import BatchStatus, BatchStop, DeliveryBatch, StopStatus
from farmroute.models.scan_event import ScanEvent, ScanOutcome, ScanType
from farmroute.models.ledger import FeeType, Payout, PayoutStatus, RecipientType, TransactionFee
from farmroute.models.dispute import Dispute, DisputeStatus, DisputeType, RefundInstruction, RefundStatus
from farmroute.models.order_transition import OrderTransition
from farmroute.models.platform_event import PlatformEvent
from farmroute.models.job_run import JobRun

__all__ = [
    "BatchStatus",
    "BatchStop",
    "DeliveryBatch",
    "Dispute",
    "DisputeStatus",
    "DisputeType",
    "FeeType",
    "JobRun",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderTransition",
    "Payout",
    "PayoutStatus",
    "PlatformEvent",
    "RecipientType",
    "RefundInstruction",
    "RefundStatus",
    "ScanEvent",
    "ScanOutcome",
    "ScanType",
    "StopStatus",
    "TransactionFee",
    "User",
    "UserRole",
]
