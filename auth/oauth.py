"""
auth/oauth.py -- Authlib OAuth/OIDC client registry and identity extraction.

A provider is enabled only when its client ID and secret (and, for generic
OIDC, the discovery URL) are configured. Everything that lists or accepts
provider names goes through enabled_provider_configs() so the HTTP routes, the
AuthProvider.sign_in_with_oauth() answer and the registry never disagree.

Security notes:
  [H1] Only verified emails are accepted. get_oauth_user_info() raises
       ValueError when the provider does not vouch for the address; linking an
       unverified address would hand an existing account to whoever typed it.

  The OAuth state parameter (CSRF) is kept by authlib in the Starlette
  SessionMiddleware cookie between the redirect and the callback.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import OAuthProviderInfo
from core.config import Settings, get_settings

logger = logging.getLogger("authcore.oauth")

_GOOGLE_DISCOVERY = "https://accounts.google.com/.well-known/openid-configuration"


def enabled_provider_configs(cfg: Settings | None = None) -> dict[str, dict]:
    """Return {name: authlib register() kwargs} for every configured provider, in display order."""
    cfg = cfg or get_settings()
    configs: dict[str, dict] = {}

    # GitHub has no discovery document; endpoints are static.
    if cfg.github_client_id and cfg.github_client_secret:
        configs["github"] = {
            "client_id": cfg.github_client_id,
            "client_secret": cfg.github_client_secret,
            "access_token_url": "https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            "authorize_url": "https://github.com/login/oauth/authorize",
            "api_base_url": "https://api.github.com/",
            "client_kwargs": {"scope": "read:user user:email"},
        }

    if cfg.google_client_id and cfg.google_client_secret:
        configs["google"] = {
            "client_id": cfg.google_client_id,
            "client_secret": cfg.google_client_secret,
            "server_metadata_url": _GOOGLE_DISCOVERY,
            "client_kwargs": {"scope": "openid email profile"},
        }

    # Generic OIDC: Okta, Azure AD, Keycloak, Authentik, ...
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        configs["oidc"] = {
            "client_id": cfg.oidc_client_id,
            "client_secret": cfg.oidc_client_secret,
            "server_metadata_url": cfg.oidc_discovery_url,
            "client_kwargs": {"scope": "openid email profile"},
        }
    return configs


def build_oauth_registry(cfg: Settings | None = None) -> OAuth:
    """Create an authlib OAuth registry with every enabled provider registered."""
    registry = OAuth()
    for name, kwargs in enabled_provider_configs(cfg).items():
        registry.register(name=name, **kwargs)
        logger.info("OAuth provider registered: %s", name)
    return registry


def get_enabled_providers(cfg: Settings | None = None) -> list[OAuthProviderInfo]:
    """Name and button label for each enabled provider (GET /api/v1/auth/providers)."""
    cfg = cfg or get_settings()
    labels = {"github": "GitHub", "google": "Google", "oidc": cfg.oidc_display_name}
    return [OAuthProviderInfo(name=name, label=labels[name]) for name in enabled_provider_configs(cfg)]


# ---------------------------------------------------------------------------
# Identity extraction [H1]
# ---------------------------------------------------------------------------


async def get_oauth_user_info(client, provider: str, token: dict) -> tuple[str, str, str | None]:
    """Return (email, subject, display_name) for the signed-in provider account.

    Raises:
        ValueError: the provider is unknown, or no verified email is available.
            The callback route treats this as a failed sign-in.
    """
    if provider == "github":
        return await _github_identity(client, token)
    if provider in ("google", "oidc"):
        return _oidc_identity(token, provider)
    raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _github_identity(client, token: dict) -> tuple[str, str, str | None]:
    # The access token carries no email: /user gives the stable numeric id,
    # /user/emails the addresses with their verification state.
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()
    email = next(
        (e["email"] for e in emails_resp.json() if e.get("primary") and e.get("verified")),
        None,
    )
    if not email:
        raise ValueError("GitHub OAuth: account has no primary verified email")
    return email, str(profile["id"]), profile.get("name") or profile.get("login")


def _oidc_identity(token: dict, provider: str) -> tuple[str, str, str | None]:
    # A missing email_verified claim counts as unverified.
    claims = token.get("userinfo")
    if not claims:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")
    if not claims.get("email_verified", False):
        raise ValueError(f"{provider} OAuth: email is not verified")
    email = claims.get("email")
    subject = claims.get("sub")
    if not email or not subject:
        raise ValueError(f"{provider} OAuth: missing email or sub claim")
    return email, subject, claims.get("name")
