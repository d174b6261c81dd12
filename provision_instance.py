#!/usr/bin/env python3
"""
provision_instance.py — Deep Signal instance provisioning CLI (Hetzner + Cloudflare)

Drives the provisioning orchestrator from a shell:
  reserve    Create a VM for an agent name right away (free-tier defaults)
  configure  Apply final settings to a reserved VM (fast path, non-fatal)
  deploy     Reserve + configure in one go (slow path), or fast path with --record
  status     Provider status and health of an instance
  list       Every instance this tool created (by managed-by label)
  restart    Restart the gateway on an instance
  channel    Enable Slack / Telegram / Discord on an instance
  destroy    Delete an instance and its DNS records
  keygen     Generate an ed25519 SSH keypair to register with Hetzner

Every command prints a JSON summary on stdout. Reservation records printed by
`reserve` are what `configure`, `deploy --record` and `channel` read back.

Usage:
    python3 provision_instance.py reserve "Acme Corp" > acme.json
    python3 provision_instance.py configure --record acme.json --provider anthropic --api-key sk-... --vibe casual
    python3 provision_instance.py deploy --settings onboarding.json
    python3 provision_instance.py channel --record acme.json telegram --bot-token 123:abc

Environment:
    HETZNER_API_TOKEN            Hetzner Cloud API token
    CLOUDFLARE_API_TOKEN         Cloudflare token with DNS edit on the zone
    CLOUDFLARE_ZONE_ID           Zone holding DEEPSIGNAL_DOMAIN_SUFFIX
    DEEPSIGNAL_SSH_KEY_PATH      Private key matching the key registered at Hetzner
    DEEPSIGNAL_ON_POLL_TIMEOUT   assume_ready (default) or fail
    ANTHROPIC_API_KEY            Default key baked into reserved instances
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from deep_signal.provisioning.bootscript import VIBES
from deep_signal.provisioning.deadline import Deadline
from deep_signal.provisioning.errors import DeployFailed, ProvisioningError
from deep_signal.provisioning.orchestrator import Orchestrator
from deep_signal.provisioning.profiles import AUTOMATED_CHANNELS, PROVIDER_MODELS
from deep_signal.provisioning.remote_exec import generate_ssh_keypair
from deep_signal.provisioning.settings import Settings

LOG_FMT = "%(asctime)s %(message)s"
log = logging.getLogger("provision")


# =============================================================================
# Helpers
# =============================================================================

def load_json(path: str) -> dict:
    if path == "-":
        return json.load(sys.stdin)
    p = Path(path)
    if not p.exists():
        sys.exit(f"ERROR: File not found: {p}")
    return json.loads(p.read_text(encoding="utf-8"))


def emit(data: dict):
    print(json.dumps(data, indent=2))


def deploy_settings(args) -> dict:
    """Settings payload from --settings, overridden by individual flags."""
    data = load_json(args.settings) if args.settings else {}
    overrides = {
        "agentName": args.name,
        "provider": args.provider,
        "apiKey": args.api_key,
        "vibe": args.vibe,
        "region": args.region,
        "serverType": args.server_type,
    }
    data.update({k: v for k, v in overrides.items() if v})
    if args.skill:
        data["skills"] = list(dict.fromkeys([*data.get("skills", []), *args.skill]))
    return data


def deadline_from(args) -> Deadline:
    return Deadline(args.timeout) if args.timeout else Deadline()


def print_outcome(outcome):
    log.info("")
    log.info("=" * 64)
    log.info("  DEPLOY COMPLETE" + ("" if not outcome.errors else " (some settings not applied)"))
    log.info("=" * 64)
    log.info(f"  Instance:       {outcome.instance.id}")
    log.info(f"  Domain:         {outcome.instance.domain}")
    log.info(f"  Address:        {outcome.instance.public_address or 'pending'}")
    log.info(f"  Dashboard:      {outcome.dashboard_url}")
    if outcome.timed_out:
        log.info("  Health:         not confirmed yet (timed out, assumed ready)")
    for err in outcome.errors:
        log.info(f"  ⚠️  {err}")
    log.info("=" * 64)


# =============================================================================
# Commands
# =============================================================================

def cmd_reserve(orch: Orchestrator, args):
    instance = orch.reserve(args.name, origin=args.origin, region=args.region, server_type=args.server_type)
    emit(instance.to_record())


def cmd_configure(orch: Orchestrator, args):
    record = load_json(args.record)
    settings = deploy_settings(args)
    outcome = orch.configure(record, settings, deadline_from(args))
    print_outcome(outcome)
    emit(outcome.to_dict())


def cmd_deploy(orch: Orchestrator, args):
    record = load_json(args.record) if args.record else None
    settings = deploy_settings(args)
    outcome = orch.deploy(settings, reservation=record, origin=args.origin,
                          deadline=deadline_from(args))
    print_outcome(outcome)
    emit(outcome.to_dict())


def cmd_status(orch: Orchestrator, args):
    emit(orch.status(args.id, domain=args.domain))


def cmd_list(orch: Orchestrator, args):
    instances = orch.list_instances()
    log.info(f"  {len(instances)} managed instance(s)")
    emit({"instances": instances})


def cmd_restart(orch: Orchestrator, args):
    emit(orch.restart(args.id))


def cmd_channel(orch: Orchestrator, args):
    config = {"botToken": args.bot_token}
    if args.app_token:
        config["appToken"] = args.app_token
    emit(orch.configure_channel(load_json(args.record), args.channel, config))


def cmd_destroy(orch: Orchestrator, args):
    if not args.yes:
        sys.exit("ERROR: destroy deletes the server permanently; pass --yes to confirm")
    emit(orch.destroy(args.id))


def cmd_keygen(args):
    out = Path(args.out).expanduser()
    if out.exists() and not args.force:
        sys.exit(f"ERROR: {out} already exists (use --force to overwrite)")
    keys = generate_ssh_keypair()
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(keys["private_key_pem"])
    os.chmod(out, 0o600)
    pub = out.with_name(out.name + ".pub")
    pub.write_text(keys["public_key_openssh"] + "\n")
    log.info(f"  Private key: {out}")
    log.info(f"  Public key:  {pub} (register it in the Hetzner console)")
    emit({"privateKeyPath": str(out), "publicKeyPath": str(pub), "publicKey": keys["public_key_openssh"]})


# =============================================================================
# CLI
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Provision and configure Deep Signal gateway instances",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 provision_instance.py reserve "Acme Corp" > acme.json
  python3 provision_instance.py deploy --record acme.json --provider anthropic --api-key sk-...
  python3 provision_instance.py deploy --name "Acme Corp" --skill github --skill notion
  python3 provision_instance.py status 12345678
  python3 provision_instance.py list
  python3 provision_instance.py destroy 12345678 --yes
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("reserve", help="Create a VM for an agent name (free-tier defaults)")
    p.add_argument("name", help="Agent display name, e.g. 'Acme Corp'")
    p.add_argument("--region", default=None, help="Hetzner location (default: DEEPSIGNAL_REGION or ash)")
    p.add_argument("--server-type", default=None, help="Hetzner server type (default: cpx21)")
    p.add_argument("--origin", default=None, help="Caller address for rate limiting")

    def settings_args(p):
        p.add_argument("--settings", default=None, help="JSON file with onboarding settings ('-' for stdin)")
        p.add_argument("--name", default=None, help="Agent name")
        p.add_argument("--provider", default=None, choices=list(PROVIDER_MODELS), help="Model provider")
        p.add_argument("--api-key", default=None, help="Provider API key")
        p.add_argument("--vibe", default=None, choices=list(VIBES), help="Persona vibe")
        p.add_argument("--skill", action="append", default=[], help="Skill id (repeatable)")
        p.add_argument("--region", default=None, help="Hetzner location")
        p.add_argument("--server-type", default=None, help="Hetzner server type")
        p.add_argument("--timeout", type=float, default=None, help="Give up after this many seconds")

    p = sub.add_parser("configure", help="Apply final settings to a reserved instance")
    p.add_argument("--record", required=True, help="Reservation record JSON ('-' for stdin)")
    settings_args(p)

    p = sub.add_parser("deploy", help="Deploy an instance (slow path, or fast path with --record)")
    p.add_argument("--record", default=None, help="Reservation record JSON to reuse")
    p.add_argument("--origin", default=None, help="Caller address for rate limiting")
    settings_args(p)

    p = sub.add_parser("status", help="Provider status and health of an instance")
    p.add_argument("id", help="Hetzner server id")
    p.add_argument("--domain", default=None, help="Domain to probe (default: derived from labels)")

    sub.add_parser("list", help="List every managed instance")

    p = sub.add_parser("restart", help="Restart the gateway process")
    p.add_argument("id", help="Hetzner server id")

    p = sub.add_parser("channel", help="Enable a messaging channel")
    p.add_argument("--record", required=True, help="Reservation record JSON ('-' for stdin)")
    p.add_argument("channel", choices=list(AUTOMATED_CHANNELS))
    p.add_argument("--bot-token", required=True, help="Bot token for the channel")
    p.add_argument("--app-token", default=None, help="Slack app-level token (default: SLACK_APP_TOKEN)")

    p = sub.add_parser("destroy", help="Delete an instance and its DNS records")
    p.add_argument("id", help="Hetzner server id")
    p.add_argument("--yes", action="store_true", help="Confirm deletion")

    p = sub.add_parser("keygen", help="Generate an ed25519 SSH keypair")
    p.add_argument("--out", default="~/.ssh/hetzner_deepsignal", help="Private key path")
    p.add_argument("--force", action="store_true", help="Overwrite an existing key")
    return parser


COMMANDS = {
    "reserve": cmd_reserve,
    "configure": cmd_configure,
    "deploy": cmd_deploy,
    "status": cmd_status,
    "list": cmd_list,
    "restart": cmd_restart,
    "channel": cmd_channel,
    "destroy": cmd_destroy,
}


def main(argv=None):
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FMT,
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    if args.command == "keygen":
        cmd_keygen(args)
        return

    try:
        orch = Orchestrator.from_settings(Settings.from_env())
    except ProvisioningError as exc:
        sys.exit(f"ERROR: {exc}")

    try:
        COMMANDS[args.command](orch, args)
    except DeployFailed as exc:
        emit(exc.to_dict())
        sys.exit(f"ERROR [{exc.kind.value}, {exc.recovery.value}]: {exc}")
    except ProvisioningError as exc:
        sys.exit(f"ERROR: {exc}")
    finally:
        # Let a DNS upsert scheduled by reserve/deploy finish before exiting.
        orch.background.shutdown(wait=True)


if __name__ == "__main__":
    main()
