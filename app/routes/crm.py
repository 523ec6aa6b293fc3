"""CRM connection status and contact update routes."""

from fastapi import APIRouter, Depends, HTTPException, status

from app.auth.verify import get_current_user_id
from app.db.helpers import DatabaseError
from app.dependencies import ChatServices, get_services
from app.infrastructure.observability.logging import get_logger
from app.models.api.crm_request import ContactUpdatesRequest
from app.models.api.crm_response import (
    ContactUpdatesPreviewResponse,
    ContactUpdatesResponse,
    CrmConnectionStatus,
    CrmStatusResponse,
)
from app.models.domain.crm_domain import Credential, Provider
from app.services.crm.credential_store import CredentialStoreError, load_credentials
from app.services.crm.errors import (
    ContactNotFoundError,
    CrmApiError,
    CrmError,
    MissingCredentialError,
    MissingEndpointError,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/crm", tags=["crm"])


def _http_error_for(e: CrmError) -> HTTPException:
    """Map a provider failure onto an HTTP status."""
    if isinstance(e, ContactNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, (MissingCredentialError, MissingEndpointError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, CrmApiError) and 400 <= e.status_code < 500 and not e.is_auth_status:
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(status_code=code, detail={"reason": e.reason, "message": str(e)})


async def _credential_for(services: ChatServices, user_id: str, provider: Provider) -> Credential:
    try:
        credential = await services.credential_store.get(user_id, provider)
    except (CredentialStoreError, DatabaseError) as e:
        logger.error(
            "Failed to load CRM credential", user_id=user_id, provider=provider.value, error=str(e)
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load CRM connection",
        ) from None

    if credential is None:
        raise _http_error_for(MissingCredentialError(provider, user_id))
    return credential


@router.get("/status", response_model=CrmStatusResponse)
async def crm_status(
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
):
    """Connection state for every supported CRM."""
    try:
        credentials = await load_credentials(services.credential_store, user_id)
    except (CredentialStoreError, DatabaseError) as e:
        logger.error("Failed to load CRM credentials", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to check CRM connections",
        ) from None

    connections = []
    for provider, credential in credentials.items():
        if credential is None:
            connections.append(
                CrmConnectionStatus(provider=provider, label=provider.label, connected=False)
            )
            continue
        buffer_minutes = services.refresher.config_for(provider).refresh_buffer_minutes
        connections.append(
            CrmConnectionStatus(
                provider=provider,
                label=provider.label,
                connected=True,
                expires_at=credential.expires_at,
                expired=credential.is_expired(),
                needs_refresh=credential.needs_refresh(buffer_minutes),
                has_refresh_token=bool(credential.refresh_token),
                instance_url=credential.instance_url,
            )
        )

    return CrmStatusResponse(
        connections=connections,
        connected_count=sum(1 for c in connections if c.connected),
    )


@router.post(
    "/{provider}/contacts/{contact_id}/updates/preview",
    response_model=ContactUpdatesPreviewResponse,
)
async def preview_contact_updates(
    provider: Provider,
    contact_id: str,
    request: ContactUpdatesRequest,
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
):
    """Compare suggested changes with the stored record, dropping ones already applied."""
    credential = await _credential_for(services, user_id, provider)
    client = services.client_for(provider)

    try:
        record = await client.get_contact(credential, contact_id)
    except CrmError as e:
        logger.warning(
            "Contact lookup for update preview failed",
            user_id=user_id,
            provider=provider.value,
            contact_id=contact_id,
            reason=e.reason,
        )
        raise _http_error_for(e) from None

    return ContactUpdatesPreviewResponse(
        contact=record, updates=client.merge_with_contact(request.updates, record)
    )


@router.post("/{provider}/contacts/{contact_id}/updates", response_model=ContactUpdatesResponse)
async def apply_contact_updates(
    provider: Provider,
    contact_id: str,
    request: ContactUpdatesRequest,
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
):
    """
    Write the selected field changes to the CRM in one update.

    Raises:
        401: Invalid authentication token
        404: Contact does not exist in the CRM
        409: CRM not connected or missing its instance URL
        502: CRM request failed
    """
    credential = await _credential_for(services, user_id, provider)

    try:
        record = await services.client_for(provider).apply_updates(
            credential, contact_id, request.updates
        )
    except CrmError as e:
        logger.warning(
            "Contact update failed",
            user_id=user_id,
            provider=provider.value,
            contact_id=contact_id,
            reason=e.reason,
            error=str(e),
        )
        raise _http_error_for(e) from None

    if record is None:
        return ContactUpdatesResponse(applied=False)

    logger.info(
        "Contact updated",
        user_id=user_id,
        provider=provider.value,
        contact_id=contact_id,
        field_count=sum(1 for u in request.updates if u.apply),
    )
    return ContactUpdatesResponse(applied=True, contact=record)
