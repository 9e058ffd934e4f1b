"""
Linking state machine — drives one verification attempt from a token to
"Discord linked to the SSO account", or to a terminal failure.

    Unlinked ──► Linked                      SSO account already has our Discord id
        │  └───► AlreadyLinkedElsewhere      SSO account has another Discord id
        ▼
    AwaitingExternalAuth                     user sent through kc_action=idp_link
        ▼
    AwaitingIdentityLink ──► Linked          Keycloak now has our Discord id
                        ├──► WrongIdentity   another Discord id (unlinked again)
                        └──► NotLinked       still nothing (cancelled / failed)

    any step, token unknown/consumed ──► Expired

On Linked the token is consumed first and the completion event sent
second: a crash in between loses the event, it never duplicates it.
"""
from dataclasses import dataclass
from typing import Optional

from discord_verify.exceptions import KeycloakError
from discord_verify.logging_config import get_logger
from discord_verify.models.verification import (
    LinkState,
    PendingVerification,
    VerificationCompletionEvent,
)
from discord_verify.services.channel import ChannelClosed, CompletionChannel
from discord_verify.services.keycloak import KeycloakAdminClient
from discord_verify.services.pending import PendingVerificationRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class LinkOutcome:
    state: LinkState
    token: str
    verification: Optional[PendingVerification] = None
    # Linked, but the event could not be handed to the bot
    completion_lost: bool = False


class LinkingStateMachine:
    def __init__(
        self,
        registry: PendingVerificationRegistry,
        keycloak: KeycloakAdminClient,
        channel: CompletionChannel,
    ):
        self.registry = registry
        self.keycloak = keycloak
        self.channel = channel

    async def drive(self, token: str, sso_subject: str, *, returning_from_link: bool = False) -> LinkOutcome:
        """
        Advance the attempt for ``token`` as seen by SSO user ``sso_subject``.

        ``returning_from_link`` is True when the browser comes back from the
        secondary Discord login. Keycloak and Redis failures propagate as
        UpstreamUnavailableError.
        """
        verification = await self.registry.lookup(token)
        if verification is None:
            logger.warning("verification_expired", token=token, sso_subject=sso_subject)
            return LinkOutcome(LinkState.EXPIRED, token)

        if returning_from_link:
            return await self._after_link(token, sso_subject, verification)
        return await self._first_check(token, sso_subject, verification)

    async def _first_check(
        self, token: str, sso_subject: str, verification: PendingVerification
    ) -> LinkOutcome:
        identity = await self.keycloak.get_platform_identity(sso_subject)

        if identity is None:
            logger.info("discord_not_linked_yet", token=token, sso_subject=sso_subject)
            return LinkOutcome(LinkState.AWAITING_EXTERNAL_AUTH, token, verification)

        if identity.user_id == verification.discord_user_id:
            logger.info("discord_already_linked_matches", token=token, sso_subject=sso_subject)
            return await self._complete(token, sso_subject, verification)

        logger.warning(
            "discord_linked_elsewhere",
            token=token,
            sso_subject=sso_subject,
            expected=verification.discord_user_id,
            linked=identity.user_id,
        )
        return LinkOutcome(LinkState.ALREADY_LINKED_ELSEWHERE, token, verification)

    async def _after_link(
        self, token: str, sso_subject: str, verification: PendingVerification
    ) -> LinkOutcome:
        identity = await self.keycloak.get_platform_identity(sso_subject)

        if identity is None:
            logger.warning("discord_link_missing_after_auth", token=token, sso_subject=sso_subject)
            return LinkOutcome(LinkState.NOT_LINKED, token, verification)

        if identity.user_id != verification.discord_user_id:
            logger.warning(
                "discord_link_wrong_account",
                token=token,
                sso_subject=sso_subject,
                expected=verification.discord_user_id,
                linked=identity.user_id,
            )
            try:
                await self.keycloak.delete_federated_identity(sso_subject, identity.identity_provider)
            except KeycloakError as e:
                logger.error("discord_unlink_failed", sso_subject=sso_subject, error=e.message)
            return LinkOutcome(LinkState.WRONG_IDENTITY, token, verification)

        return await self._complete(token, sso_subject, verification)

    async def _complete(
        self, token: str, sso_subject: str, verification: PendingVerification
    ) -> LinkOutcome:
        claimed = await self.registry.consume(token)
        if not claimed:
            # another request for the same token got here first
            logger.info("verification_already_completed", token=token)
            return LinkOutcome(LinkState.EXPIRED, token)

        event = VerificationCompletionEvent(
            discord_user_id=verification.discord_user_id,
            guild_id=verification.guild_id,
            sso_user_id=sso_subject,
        )
        try:
            self.channel.send(event)
        except ChannelClosed:
            logger.error(
                "completion_event_lost",
                token=token,
                discord_user_id=event.discord_user_id,
                guild_id=event.guild_id,
                sso_user_id=sso_subject,
            )
            return LinkOutcome(LinkState.LINKED, token, verification, completion_lost=True)

        logger.info(
            "verification_linked",
            token=token,
            discord_user_id=event.discord_user_id,
            guild_id=event.guild_id,
            sso_user_id=sso_subject,
        )
        return LinkOutcome(LinkState.LINKED, token, verification)
