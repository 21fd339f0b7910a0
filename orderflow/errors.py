from typing import Any, Dict, Optional

USER_MESSAGES = {
    "setup_incomplete": "The seller's payment setup is incomplete. Please try again later or choose another listing.",
    "invalid_details": "The payment details are invalid. Please check them and try again.",
    "temporarily_unavailable": "Payments are temporarily unavailable. Please try again in a moment.",
    "declined": "The payment was declined.",
    "invalid_request": "This request cannot be completed.",
    "not_found": "Not found.",
    "conflict": "This order has already been processed.",
}


def user_message(category: str) -> str:
    return USER_MESSAGES.get(category, USER_MESSAGES["invalid_request"])


class OrderflowError(Exception):
    code = "ORDERFLOW_ERROR"
    category = "invalid_request"
    retryable = False

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    @property
    def user_message(self) -> str:
        return user_message(self.category)


# Preconditions: rejected before any external call

class MissingAddressFields(OrderflowError):
    code = "MISSING_ADDRESS_FIELDS"

    def __init__(self, which: str, fields):
        super().__init__(f"{which} address is missing: {', '.join(fields)}", {"address": which, "fields": list(fields)})

    @property
    def user_message(self) -> str:
        return self.message


class InvalidAmount(OrderflowError):
    code = "INVALID_AMOUNT"


class InvalidStepTransition(OrderflowError):
    code = "INVALID_STEP_TRANSITION"

    @property
    def user_message(self) -> str:
        return self.message


class CheckoutNotFound(OrderflowError):
    code = "CHECKOUT_NOT_FOUND"
    category = "not_found"


class CheckoutInProgress(OrderflowError):
    code = "CHECKOUT_IN_PROGRESS"
    category = "conflict"

    @property
    def user_message(self) -> str:
        return "A payment for this checkout is already being processed."


class OrderNotFound(OrderflowError):
    code = "ORDER_NOT_FOUND"
    category = "not_found"


class RefundNotFound(OrderflowError):
    code = "REFUND_NOT_FOUND"
    category = "not_found"


class NotOrderSeller(OrderflowError):
    code = "NOT_ORDER_SELLER"
    category = "not_found"


class InvalidOrderState(OrderflowError):
    code = "INVALID_ORDER_STATE"
    category = "conflict"

    @property
    def user_message(self) -> str:
        return self.message


# Gateway failures

class GatewayError(OrderflowError):
    code = "GATEWAY_ERROR"
    category = "declined"


class SellerSetupIncomplete(GatewayError):
    code = "SELLER_SETUP_INCOMPLETE"
    category = "setup_incomplete"


class InvalidBankDetails(GatewayError):
    code = "INVALID_BANK_DETAILS"
    category = "invalid_details"


class GatewayUnavailable(GatewayError):
    code = "GATEWAY_UNAVAILABLE"
    category = "temporarily_unavailable"
    retryable = True


class DuplicateCharge(GatewayError):
    code = "DUPLICATE_CHARGE"
    category = "conflict"


class PaymentDeclined(GatewayError):
    code = "PAYMENT_DECLINED"
    category = "declined"
