from models.order import OrderStatus, OrderPaymentStatus
from models.payment import PaymentStatus
from models.payout import InvoiceStatus
from models.voucher import VoucherRefundStatus
from utils.errors import IllegalTransitionError

# ============================================================
# TRANSITION TABLES (SINGLE SOURCE OF TRUTH)
# ============================================================

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.READY, OrderStatus.CANCELLED},
    OrderStatus.READY: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

# Payment status on the order is a parallel dimension to fulfilment status
ORDER_PAYMENT_TRANSITIONS = {
    OrderPaymentStatus.PENDING: {OrderPaymentStatus.DOWNPAYMENT, OrderPaymentStatus.PAID},
    OrderPaymentStatus.DOWNPAYMENT: {OrderPaymentStatus.PAID, OrderPaymentStatus.REFUNDED},
    OrderPaymentStatus.PAID: {OrderPaymentStatus.REFUNDED},
    OrderPaymentStatus.REFUNDED: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING,
        PaymentStatus.VERIFIED,
        PaymentStatus.DECLINED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.PROCESSING: {
        PaymentStatus.VERIFIED,
        PaymentStatus.DECLINED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.VERIFIED: {PaymentStatus.REFUND_PENDING, PaymentStatus.CANCELLED},
    PaymentStatus.REFUND_PENDING: {PaymentStatus.REFUNDED, PaymentStatus.CANCELLED},
    PaymentStatus.DECLINED: set(),
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
    PaymentStatus.CANCELLED: set(),
}

INVOICE_TRANSITIONS = {
    InvoiceStatus.PENDING: {InvoiceStatus.PROCESSING, InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PROCESSING: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.CANCELLED: set(),
}


def is_terminal(table: dict, state) -> bool:
    return not table[state]


def allowed_sources(table: dict, target) -> list[str]:
    """States from which `target` is reachable in one step (used as update filters)."""
    return [state.value for state, targets in table.items() if target in targets]


def check_transition(table: dict, current, target, label: str):
    current = type(target)(current)

    if is_terminal(table, current):
        raise IllegalTransitionError(
            f"{label} is already {current.value} and cannot change"
        )
    if target not in table[current]:
        raise IllegalTransitionError(
            f"Invalid {label.lower()} transition: {current.value} -> {target.value}"
        )
    return current


def check_order_transition(current: str, target: OrderStatus) -> OrderStatus:
    return check_transition(ORDER_TRANSITIONS, current, target, "Order")


def check_order_payment_transition(current: str, target: OrderPaymentStatus) -> OrderPaymentStatus:
    return check_transition(ORDER_PAYMENT_TRANSITIONS, current, target, "Order payment")


def check_payment_transition(current: str, target: PaymentStatus) -> PaymentStatus:
    return check_transition(PAYMENT_TRANSITIONS, current, target, "Payment")


def check_invoice_transition(current: str, target: InvoiceStatus) -> InvoiceStatus:
    return check_transition(INVOICE_TRANSITIONS, current, target, "Invoice")


def derive_order_payment_status(amount_collected: float, total_amount: float) -> OrderPaymentStatus:
    """Order payment status implied by cumulative verified payments."""
    if amount_collected >= total_amount and total_amount >= 0 and amount_collected > 0:
        return OrderPaymentStatus.PAID
    if amount_collected > 0:
        return OrderPaymentStatus.DOWNPAYMENT
    return OrderPaymentStatus.PENDING


REFUND_REQUEST_TRANSITIONS = {
    VoucherRefundStatus.PENDING: {VoucherRefundStatus.APPROVED, VoucherRefundStatus.REJECTED},
    VoucherRefundStatus.APPROVED: set(),
    VoucherRefundStatus.REJECTED: set(),
}


def check_refund_request_transition(current: str, target: VoucherRefundStatus) -> VoucherRefundStatus:
    return check_transition(REFUND_REQUEST_TRANSITIONS, current, target, "Refund request")
