"""
profiles.py — turn the user's final deploy choices into a config change set.

DeploySettings is what the onboarding flow collects (agent name, provider,
key, vibe, skills, channels, gift details). build_changes() maps it onto the
gateway config document; the result is always merged over what is already on
the instance, never written as a whole file.
"""

import logging
from dataclasses import dataclass, field

from .bootscript import DEFAULT_VIBE, VIBES, gateway_section
from .errors import CredentialRequired, InvalidRequest

log = logging.getLogger(__name__)

FREE_MODEL = "kilocode/z-ai/glm-5:free"

PROVIDER_MODELS = {
    "free": FREE_MODEL,
    "later": FREE_MODEL,
    "anthropic": "anthropic/claude-sonnet-4-6",
    "openai": "openai/gpt-4o",
    "openrouter": "openrouter/anthropic/claude-sonnet-4-5",
}

PROVIDER_ENV_KEYS = {
    "free": "KILOCODE_API_KEY",
    "later": "KILOCODE_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

PAID_PROVIDERS = ("anthropic", "openai", "openrouter")

# UI skill ids → gateway skill names. Ids not listed pass through unchanged.
SKILL_ID_MAP = {
    "google-workspace": "gog",
    "image-gen": "nano-banana-pro",
    "video-gen": "veo",
    "tts": "sag",
    "twitter": "bird",
    "reddit": "reddit-search",
    "seo": "seo-dataforseo",
    "deep-research": "research",
    "wallet": "send-usdc",
}

VALID_CHANNELS = ("whatsapp", "slack", "telegram", "discord", "teams", "email")
AUTOMATED_CHANNELS = ("slack", "telegram", "discord")


@dataclass
class DeploySettings:
    agent_name: str
    provider: str = "free"
    api_key: str = ""
    vibe: str = DEFAULT_VIBE
    skills: list[str] = field(default_factory=list)
    channels: dict[str, dict] = field(default_factory=dict)
    gift_mode: bool = False
    recipient_name: str = ""
    recipient_context: str = ""
    setup_person_name: str = ""
    region: str | None = None
    server_type: str | None = None

    @classmethod
    def from_dict(cls, data: dict, default_name: str = "") -> "DeploySettings":
        """Build from the camelCase payload the onboarding UI posts.

        A reserved instance already has a name, so partial payloads fall back
        to default_name; agentName is only required when there is none.
        """
        name = (data.get("agentName") or "").strip() or default_name.strip()
        if not name:
            raise InvalidRequest("agentName is required")
        skills = data.get("skills") or []
        channels = data.get("channels") or {}
        if not isinstance(skills, list) or not isinstance(channels, dict):
            raise InvalidRequest("skills must be a list and channels an object")
        return cls(
            agent_name=name,
            provider=data.get("provider") or "free",
            api_key=data.get("apiKey") or "",
            vibe=data.get("vibe") or DEFAULT_VIBE,
            skills=[str(s) for s in skills],
            channels=channels,
            gift_mode=bool(data.get("giftMode")),
            recipient_name=data.get("recipientName") or "",
            recipient_context=data.get("recipientContext") or "",
            setup_person_name=data.get("setupPersonName") or "",
            region=data.get("region"),
            server_type=data.get("serverType"),
        )

    @property
    def model(self) -> str:
        return PROVIDER_MODELS.get(self.provider, FREE_MODEL)

    @property
    def env_key(self) -> str | None:
        return PROVIDER_ENV_KEYS.get(self.provider)

    @property
    def known_vibe(self) -> str:
        return self.vibe if self.vibe in VIBES else DEFAULT_VIBE


def skill_entries(skills) -> dict:
    return {SKILL_ID_MAP.get(s, s): {"enabled": True} for s in skills}


def require_credentials(settings: DeploySettings):
    if settings.provider in PAID_PROVIDERS and not settings.api_key:
        raise CredentialRequired(
            f"An API key is required for provider '{settings.provider}'. "
            f"Add one or continue on the free tier."
        )


def channel_changes(channel: str, config: dict, slack_app_token: str = "") -> dict:
    """Change set enabling one channel. Only the automated channels are accepted."""
    if channel not in VALID_CHANNELS:
        raise InvalidRequest(f"Invalid channel: {channel}")
    if channel not in AUTOMATED_CHANNELS:
        raise InvalidRequest(f"{channel} setup not yet automated. Configure manually via SSH.")
    config = config or {}
    bot_token = config.get("botToken") or config.get("token")
    if not bot_token:
        raise InvalidRequest("Bot token is required")

    if channel == "slack":
        section = {
            "enabled": True,
            "botToken": bot_token,
            "appToken": config.get("appToken") or slack_app_token,
        }
    elif channel == "telegram":
        section = {"enabled": True, "botToken": bot_token}
    else:
        section = {"enabled": True, "token": bot_token}
    return {"channels": {channel: section}}


def build_changes(settings: DeploySettings, token: str, port: int = 3000,
                  slack_app_token: str = "") -> dict:
    changes = {
        "agents": {"defaults": {"model": {"primary": settings.model}}},
        "gateway": gateway_section(token, port),
        "skills": {"entries": skill_entries(settings.skills)},
        "commands": {"restart": True},
    }
    if settings.api_key and settings.env_key:
        changes["env"] = {settings.env_key: settings.api_key}
    for channel, config in settings.channels.items():
        channels = channel_changes(channel, config, slack_app_token)["channels"]
        changes.setdefault("channels", {}).update(channels)
    return changes
