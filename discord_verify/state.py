"""
AppState — every long-lived object of one process, built once at startup
and attached to app.state. The web routers and the interaction handlers
share only the store and the completion channel.
"""
import time
from dataclasses import dataclass
from typing import Callable

from discord_verify.config import Settings
from discord_verify.services.channel import CompletionChannel
from discord_verify.services.discord_api import DiscordClient
from discord_verify.services.identity_links import IdentityLinkStore
from discord_verify.services.keycloak import KeycloakAdminClient
from discord_verify.services.linking import LinkingStateMachine
from discord_verify.services.oidc import OIDCClient
from discord_verify.services.pending import PendingVerificationRegistry
from discord_verify.services.reconciler import RoleReconciler
from discord_verify.services.role_config import RoleConfigResolver
from discord_verify.services.setup_sessions import SetupSessionTable
from discord_verify.store import RedisStore


@dataclass
class AppState:
    settings: Settings
    store: RedisStore
    discord: DiscordClient
    keycloak: KeycloakAdminClient
    oidc: OIDCClient
    channel: CompletionChannel
    registry: PendingVerificationRegistry
    links: IdentityLinkStore
    resolver: RoleConfigResolver
    reconciler: RoleReconciler
    setup_sessions: SetupSessionTable
    linking: LinkingStateMachine

    async def close(self) -> None:
        await self.discord.close()
        await self.keycloak.close()
        await self.oidc.close()
        await self.store.close()


def assemble_state(
    settings: Settings,
    store: RedisStore,
    discord: DiscordClient,
    keycloak: KeycloakAdminClient,
    oidc: OIDCClient,
    clock: Callable[[], float] = time.time,
) -> AppState:
    """Wire the services around already-built adapters (tests pass fakes)."""
    channel = CompletionChannel()
    registry = PendingVerificationRegistry(store, ttl_seconds=settings.VERIFICATION_TTL_SECONDS, clock=clock)
    resolver = RoleConfigResolver(store, discord)
    return AppState(
        settings=settings,
        store=store,
        discord=discord,
        keycloak=keycloak,
        oidc=oidc,
        channel=channel,
        registry=registry,
        links=IdentityLinkStore(store, clock=clock),
        resolver=resolver,
        reconciler=RoleReconciler(store, discord, resolver),
        setup_sessions=SetupSessionTable(ttl_seconds=settings.SETUP_SESSION_TTL_SECONDS, clock=clock),
        linking=LinkingStateMachine(registry, keycloak, channel),
    )


def build_state(settings: Settings) -> AppState:
    timeout = settings.HTTP_TIMEOUT_SECONDS
    return assemble_state(
        settings,
        store=RedisStore.from_url(settings.REDIS_URL),
        discord=DiscordClient(
            token=settings.DISCORD_TOKEN,
            application_id=settings.DISCORD_APPLICATION_ID,
            base_url=settings.DISCORD_API_BASE,
            timeout=timeout,
        ),
        keycloak=KeycloakAdminClient(
            realm_url=settings.realm_url,
            admin_realm_url=settings.admin_realm_url,
            client_id=settings.KEYCLOAK_ADMIN_CLIENT_ID,
            client_secret=settings.KEYCLOAK_ADMIN_CLIENT_SECRET,
            identity_provider_alias=settings.IDENTITY_PROVIDER_ALIAS,
            timeout=timeout,
        ),
        oidc=OIDCClient(
            realm_url=settings.realm_url,
            client_id=settings.KEYCLOAK_OIDC_CLIENT_ID,
            client_secret=settings.KEYCLOAK_OIDC_CLIENT_SECRET,
            redirect_uri=settings.oidc_redirect_uri,
            timeout=timeout,
        ),
    )
