#!/usr/bin/env python3
"""
Command-line entry point
========================
All configuration flows through ``ScraperRunConfig``: ``KB_*`` environment
variables (a ``.env`` file is loaded first), overlaid by CLI flags.

Run with: python -m kbcrawler <command> ...
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).resolve().parent.parent / '.env'
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv()  # tries CWD

from .app import build_classifier, build_pipeline, build_vault
from .auth.site_rules import SiteRuleRegistry
from .auth.vault import generate_master_key
from .errors import KBCrawlerError
from .models import AuthType, ScrapeJob
from .run_config import ScraperRunConfig

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_classify(args, config: ScraperRunConfig) -> int:
    classifier = build_classifier(config, SiteRuleRegistry.with_builtins())
    result = classifier.classify(args.url)
    print(json.dumps({
        "host": result.host,
        "regime": result.regime.value,
        "matched_pattern": result.matched_pattern.pattern if result.matched_pattern else None,
    }, indent=2))
    return 0


def cmd_gen_key(args, config: ScraperRunConfig) -> int:
    print(generate_master_key())
    return 0


def _pairs(values) -> dict:
    out = {}
    for item in values or []:
        if '=' not in item:
            raise SystemExit(f"Expected KEY=VALUE, got {item!r}")
        k, v = item.split('=', 1)
        out[k.strip()] = v
    return out


def cmd_add_credential(args, config: ScraperRunConfig) -> int:
    if not config.vault_state_path:
        logger.error("Set KB_VAULT_STATE_PATH or --vault-state so the credential can be stored")
        return 2
    auth_type = AuthType(args.auth_type)
    if auth_type in (AuthType.BASIC, AuthType.FORM):
        payload = {"username": args.username or "", "password": args.password or ""}
    elif auth_type is AuthType.HEADER:
        payload = {"headers": _pairs(args.header)}
    else:
        payload = {"cookies": _pairs(args.cookie)}

    vault = build_vault(config)
    cred = vault.upsert(args.tenant, args.domain, auth_type, payload, name=args.name or "")
    print(json.dumps({"id": cred.id, "domain_key": cred.domain_key, "auth_type": cred.auth_type.value}))
    return 0


async def _run_jobs(args, config: ScraperRunConfig) -> int:
    jobs_data = json.loads(Path(args.jobs_file).read_text(encoding='utf-8'))
    pipeline = build_pipeline(config)
    scheduler = pipeline.scheduler
    try:
        jobs = [scheduler.schedule(ScrapeJob.from_dict(item)) for item in jobs_data]
        if args.once:
            runs = await asyncio.gather(*(scheduler.trigger(job.id) for job in jobs))
            for run in runs:
                print(json.dumps(run.to_dict(), indent=2))
            return 0 if all(r.outcome.value == "success" for r in runs) else 1
        await scheduler.run_forever()
        return 0
    finally:
        await pipeline.close()


def cmd_run(args, config: ScraperRunConfig) -> int:
    try:
        return asyncio.run(_run_jobs(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='kbcrawler',
        description='Authentication-aware scraping core',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m kbcrawler classify https://launchpad.support.sap.com/notes
  python -m kbcrawler gen-key
  python -m kbcrawler add-credential --tenant acme --domain support.sap.com \\
      --auth-type form --username me@acme.com --password '...'
  python -m kbcrawler run jobs.json --once
        """,
    )
    parser.add_argument('--vault-state', dest='vault_state', help='Vault JSON state file')
    parser.add_argument('--patterns-file', dest='patterns_file', help='Extra domain patterns (JSON)')
    parser.add_argument('--sso-state', dest='sso_state', help='Host SSO storage-state JSON')
    parser.add_argument('--content-root', dest='content_root', help='Directory for saved documents')
    parser.add_argument('--workers', type=int, help='Global worker pool size')
    parser.add_argument('--timeout', type=int, help='Fetch timeout in seconds')
    parser.add_argument('--retries', type=int, help='Fetch retries after the first attempt')
    parser.add_argument('--major-threshold', dest='major_threshold', type=float,
                        help='Change percentage above which a change is major')

    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('classify', help='Show the regime for a URL')
    p.add_argument('url')
    p.set_defaults(func=cmd_classify)

    p = sub.add_parser('gen-key', help='Print a new credential master key')
    p.set_defaults(func=cmd_gen_key)

    p = sub.add_parser('add-credential', help='Store an encrypted credential')
    p.add_argument('--tenant', required=True)
    p.add_argument('--domain', required=True)
    p.add_argument('--auth-type', dest='auth_type', required=True, choices=[t.value for t in AuthType])
    p.add_argument('--name')
    p.add_argument('--username')
    p.add_argument('--password')
    p.add_argument('--header', action='append', help='KEY=VALUE (repeatable)')
    p.add_argument('--cookie', action='append', help='NAME=VALUE (repeatable)')
    p.set_defaults(func=cmd_add_credential)

    p = sub.add_parser('run', help='Schedule jobs from a JSON file and run them')
    p.add_argument('jobs_file')
    p.add_argument('--once', action='store_true', help='Run every job once and exit')
    p.set_defaults(func=cmd_run)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = ScraperRunConfig.from_cli_args(args)
    if args.command == 'run':
        config.log_summary()
    try:
        return args.func(args, config)
    except KBCrawlerError as exc:
        logger.error(f"{type(exc).__name__}: {exc}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
