"""
bootscript.py — cloud-init user data, default gateway config and SOUL.md.

Templates live in ./templates and use __KEY__ placeholders filled by fill().
The boot script installs Node 22, Caddy and the OpenClaw gateway, writes the
config and persona only if nothing is there yet, registers a systemd unit and
touches the boot marker once the gateway has been started.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from .config_store import CONFIG_DIR, CONFIG_PATH, SOUL_PATH, heredoc_marker
from .supervisor import BOOT_MARKER, SERVICE_NAME

log = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent.resolve() / "templates"

DEFAULT_MODEL = "anthropic/claude-sonnet-4-6"
DEFAULT_SKILLS = ("weather", "web-search", "research")
DEFAULT_VIBE = "friendly"

VIBES = {
    "professional": """## Your Personality
You are {name} - sharp, focused, and deeply capable. You get things done without the fluff.

**Traits:**
- Precise and direct. Say what you mean, mean what you say.
- Use structured responses when helpful (lists, headers) - but only when it adds clarity.
- Confident in your analysis. Don't hedge unnecessarily.
- Respectful but never sycophantic.

**Speech pattern:** Clear, confident, slightly formal.""",
    "casual": """## Your Personality
You are {name} - chill, real, and refreshingly un-corporate.

**Traits:**
- Zero pretense. Say what you think, plainly.
- Short responses by default. If they want more, they'll ask.
- Comfortable with "I don't know" - just offer to figure it out.

**Speech pattern:** Relaxed, direct, conversational.""",
    "spicy": """## Your Personality
You are {name} - opinionated, bold, and not afraid to disagree.

**Traits:**
- You have strong opinions and you share them.
- You push back when something seems wrong or misguided.
- Dry wit and occasional sarcasm (not cruelty - you're not mean, just honest).

**Speech pattern:** Bold, a bit irreverent, memorable.""",
    "friendly": """## Your Personality
You are {name} - warm, genuinely helpful, and the kind of AI people actually enjoy talking to.

**Traits:**
- Warm without being saccharine. You care but you're not performative about it.
- Conversational and natural. Write like a smart friend texting, not a press release.
- Great at reading the room.

**Speech pattern:** Natural, warm, occasional humor.""",
}


def load_template(name: str) -> str:
    return (TEMPLATES_DIR / name).read_text(encoding="utf-8")


def fill(template: str, replacements: dict) -> str:
    result = template
    for k, v in replacements.items():
        result = result.replace(f"__{k}__", str(v))
    return result


def gateway_section(token: str, port: int = 3000) -> dict:
    return {
        "mode": "local",
        "bind": "lan",
        "port": port,
        "auth": {"token": token},
        "controlUi": {
            "dangerouslyAllowHostHeaderOriginFallback": True,
            "dangerouslyDisableDeviceAuth": True,
            "allowInsecureAuth": True,
        },
    }


def build_default_config(token: str, api_key: str = "", model: str = DEFAULT_MODEL,
                         skills=DEFAULT_SKILLS, port: int = 3000) -> dict:
    """Free-tier config a reserved instance boots with."""
    return {
        "agents": {"defaults": {"model": {"primary": model}}},
        "gateway": gateway_section(token, port),
        "env": {"ANTHROPIC_API_KEY": api_key} if api_key else {},
        "skills": {"entries": {s: {"enabled": True} for s in skills}},
        "commands": {"restart": True},
    }


def build_soul(
    agent_name: str,
    domain: str,
    vibe: str = DEFAULT_VIBE,
    gift_mode: bool = False,
    recipient_name: str = "",
    recipient_context: str = "",
    setup_person_name: str = "",
) -> str:
    name = agent_name or "Agent"
    setup_by = setup_person_name or "your admin"
    is_gift = bool(gift_mode and recipient_name)
    if is_gift:
        setup_line = f"You were set up by {setup_by} for {recipient_name}."
    else:
        setup_line = f"You were set up by {setup_by}."
    gift_section = ""
    if is_gift and recipient_context:
        gift_section = (
            f"\n## About {recipient_name}\n"
            f"Here is what {setup_by} shared about you:\n\n"
            f"\"{recipient_context}\"\n\n"
            f"Use this to personalize your conversations. Be natural - don't recite it like a script.\n"
        )
    personality = VIBES.get(vibe, VIBES[DEFAULT_VIBE]).format(name=name)
    return fill(load_template("soul.md"), {
        "AGENT_NAME": name,
        "DOMAIN": domain,
        "SETUP_LINE": setup_line,
        "GIFT_SECTION": gift_section,
        "PERSONALITY": personality,
    })


def build_boot_script(
    agent_name: str,
    domain: str,
    token: str,
    config: dict,
    soul: str,
    port: int = 3000,
    mode: str = "reserve",
) -> str:
    config_json = json.dumps(config, indent=2)
    # The name lands in a shell comment and a unit Description; keep it on one line.
    one_line_name = " ".join(agent_name.split())
    script = fill(load_template("bootstrap.sh"), {
        "MODE": mode,
        "AGENT_NAME": one_line_name,
        "DOMAIN": domain,
        "GENERATED": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "CONFIG_DIR": CONFIG_DIR,
        "CONFIG_PATH": CONFIG_PATH,
        "SOUL_PATH": SOUL_PATH,
        "SERVICE": SERVICE_NAME,
        "TOKEN": token,
        "PORT": port,
        "BOOT_MARKER": BOOT_MARKER,
        "CONFIG_MARKER": heredoc_marker(config_json, "EOFCONFIG"),
        "SOUL_MARKER": heredoc_marker(soul, "EOFSOUL"),
        # Free-form content last so fill() never rewrites placeholders inside it.
        "CONFIG_JSON": config_json,
        "SOUL": soul.rstrip("\n"),
    })
    log.debug(f"  Boot script for {domain}: {len(script)} bytes")
    return script
