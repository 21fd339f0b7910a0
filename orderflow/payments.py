import logging
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .errors import DuplicateCharge, GatewayError, GatewayUnavailable, InvalidAmount, SellerSetupIncomplete
from .gateway import PaymentGateway
from .models import Buyer, CaptureResult, DeliveryQuote, OrderDraft, SplitComputation

logger = logging.getLogger(__name__)


def compute_split(total: int, rate: float) -> SplitComputation:
    """
    Split an order total (minor units) between platform and seller:
      platform_fee  = round(total * rate), half up
      seller_amount = total - platform_fee
    so the two parts always add back up to the total.
    """
    if total < 0:
        raise InvalidAmount(f"Order total cannot be negative: {total}")
    if not 0 <= rate <= 1:
        raise InvalidAmount(f"Platform fee rate must be between 0 and 1: {rate}")
    fee = int((Decimal(total) * Decimal(str(rate))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return SplitComputation(total=total, platform_fee=fee, seller_amount=total - fee)


def new_payment_reference() -> str:
    return f"ord_{uuid.uuid4().hex}"


class SplitPaymentGateway:
    def __init__(self, gateway: PaymentGateway, platform_rate: float, currency: str = "ZAR"):
        self.gateway = gateway
        self.platform_rate = platform_rate
        self.currency = currency

    async def capture(
        self,
        buyer: Buyer,
        draft: OrderDraft,
        quote: DeliveryQuote,
        reference: str,
        payment_method: Optional[str] = None,
    ) -> CaptureResult:
        subaccount = (draft.seller_subaccount or "").strip()
        if not subaccount:
            raise SellerSetupIncomplete(
                f"Seller {draft.seller_id} has no payment subaccount",
                {"seller_id": draft.seller_id},
            )
        if draft.delivery_fee_cents != quote.price_cents:
            raise InvalidAmount("Delivery fee does not match the selected quote")

        total = draft.total_cents
        if total <= 0:
            raise InvalidAmount(f"Order total must be positive: {total}")

        split = compute_split(total, self.platform_rate)
        logger.info(
            f"Capturing {total} {self.currency} ref={reference} seller={draft.seller_id} "
            f"platform_fee={split.platform_fee} seller_amount={split.seller_amount}"
        )

        try:
            data = await self.gateway.charge(
                email=buyer.email,
                amount_cents=total,
                currency=self.currency,
                reference=reference,
                subaccount=subaccount,
                platform_fee_cents=split.platform_fee,
                authorization_code=payment_method,
            )
        except DuplicateCharge:
            # Same reference seen before: an earlier attempt may have gone through.
            data = await self._recover_duplicate(reference, total)

        return CaptureResult(
            payment_reference=data.get("reference") or reference,
            split=split,
            gateway_response=data,
        )

    async def _recover_duplicate(self, reference: str, total: int) -> dict:
        try:
            data = await self.gateway.verify(reference)
        except GatewayUnavailable:
            raise
        except GatewayError as e:
            logger.warning(f"Verification of duplicate reference {reference} failed: {e!r}")
            raise DuplicateCharge(f"Duplicate charge for reference {reference}", {"reference": reference}) from e

        if data.get("status") == "success" and data.get("amount") != total:
            logger.error(
                f"Reference {reference} was captured for {data.get('amount')}, not {total}; refusing to reuse it"
            )
            raise DuplicateCharge(
                f"Reference {reference} was already used for a different amount",
                {"reference": reference, "expected_amount": total, "provider_response": data},
            )
        if data.get("status") == "success":
            logger.info(f"Reference {reference} already captured; reusing the original charge")
            return data
        raise DuplicateCharge(
            f"Duplicate charge for reference {reference}",
            {"reference": reference, "provider_response": data},
        )
