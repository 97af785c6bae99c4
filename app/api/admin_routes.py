"""
Admin API routes for operating on customers' indicator access.

Protected by the operator bearer secret (OPERATOR_SECRET).
"""

from fastapi import APIRouter, Depends, Response
from structlog import get_logger

from app.api.dependencies import get_billing_provider, get_provisioning_service, require_operator
from app.api.routes import outcome_status_code, provisioning_response, run_provisioning
from app.exceptions import ValidationError
from app.models.api import CustomerRequest, ProvisioningReason, ProvisioningResponse
from app.services.payment_provider import BillingProvider
from app.services.provisioning import ProvisioningService

logger = get_logger(__name__)
router = APIRouter(
    prefix="/v1/admin", tags=["admin"], dependencies=[Depends(require_operator)]
)


@router.post("/access/retry", response_model=ProvisioningResponse)
async def retry_access(
    request: CustomerRequest,
    response: Response,
    billing: BillingProvider = Depends(get_billing_provider),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> ProvisioningResponse:
    """
    Re-run provisioning for a customer, e.g. after the session was refreshed.

    Same semantics as a user-initiated refresh.
    """
    customer = await billing.retrieve_customer(request.customer_id)
    if not customer.external_username:
        raise ValidationError("No TradingView username found for customer")

    logger.info("admin_access_retry", customer_id=customer.customer_id)
    return await run_provisioning(
        customer, ProvisioningReason.MANUAL_REFRESH, billing, service, response
    )


@router.post("/access/revoke", response_model=ProvisioningResponse)
async def revoke_access(
    request: CustomerRequest,
    response: Response,
    billing: BillingProvider = Depends(get_billing_provider),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> ProvisioningResponse:
    """Remove a customer's access on every indicator immediately."""
    customer = await billing.retrieve_customer(request.customer_id)
    if not customer.external_username:
        raise ValidationError("No TradingView username found for customer")

    logger.info("admin_access_revoke", customer_id=customer.customer_id)
    outcome = await service.revoke(customer)
    response.status_code = outcome_status_code(outcome)
    return provisioning_response(outcome)
