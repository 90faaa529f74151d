import argparse
import logging
from contextlib import contextmanager
from datetime import timezone
from typing import Iterator, List

from rich.console import Console
from rich.table import Table
from sqlalchemy.orm import Session

from .classifier import LLMClassifier
from .config import Config, load_config
from .cron import LocalTriageTrigger, run_agent_cron
from .database import create_db_engine, create_session_factory, init_db
from .digest import send_digests
from .gmail_client import GmailGatewayFactory, run_installed_app_flow
from .logging_config import setup_logging
from .models import Account, LogEntry, Rule, RuleAction, RuleType, RunMode
from .storage import (
    AccountNotFoundError,
    create_rule,
    get_account,
    list_accounts,
    list_logs,
    list_rules,
    save_settings,
    upsert_account,
)
from .triage_engine import run_triage


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _bootstrap() -> Config:
    config = load_config()
    setup_logging(config.log_level, config.log_to_file)
    return config


@contextmanager
def _session(config: Config) -> Iterator[Session]:
    engine = create_db_engine(config.database_url)
    init_db(engine)
    session = create_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def _render_accounts_table(accounts: List[Account]) -> None:
    console = Console()
    table = Table(title="Connected Accounts")

    table.add_column("ID")
    table.add_column("Email")
    table.add_column("Updated")

    for a in accounts:
        table.add_row(a.id, a.email, a.updated_at.isoformat() if a.updated_at else "")

    console.print(table)


def _render_rules_table(rules: List[Rule]) -> None:
    console = Console()
    table = Table(title="Triage Rules")

    table.add_column("ID")
    table.add_column("Account")
    table.add_column("Type")
    table.add_column("Pattern")
    table.add_column("Action")
    table.add_column("Active")

    for r in rules:
        table.add_row(
            r.id,
            r.account_id,
            r.rule_type.value,
            r.pattern,
            r.action.value,
            "yes" if r.is_active else "no",
        )

    console.print(table)


def _render_logs_table(entries: List[LogEntry]) -> None:
    console = Console()
    table = Table(title="Recent Activity")

    table.add_column("When")
    table.add_column("Outcome")
    table.add_column("Priority")
    table.add_column("Draft")
    table.add_column("From")
    table.add_column("Subject")

    for e in entries:
        table.add_row(
            e.created_at.strftime("%Y-%m-%d %H:%M") if e.created_at else "",
            e.outcome.value,
            e.priority.value,
            "yes" if e.draft_created else "no",
            e.from_address,
            e.subject,
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Commands: accounts
# ---------------------------------------------------------------------------


def cmd_connect_account(args: argparse.Namespace) -> None:
    config = _bootstrap()
    email, creds = run_installed_app_flow(config)
    expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None

    with _session(config) as session:
        account = upsert_account(session, email, creds.token, creds.refresh_token, expiry)

    print(f"Connected {account.email} (id={account.id}).")


def cmd_list_accounts(args: argparse.Namespace) -> None:
    config = _bootstrap()
    with _session(config) as session:
        _render_accounts_table(list_accounts(session))


# ---------------------------------------------------------------------------
# Commands: jobs
# ---------------------------------------------------------------------------


def cmd_run_triage(args: argparse.Namespace) -> None:
    config = _bootstrap()
    with _session(config) as session:
        stats = run_triage(
            config,
            session,
            GmailGatewayFactory(config, session),
            LLMClassifier(config),
            lookback_days=args.days,
            account_id=args.account,
        )
    print(stats.model_dump_json(indent=2))


def cmd_run_cron(args: argparse.Namespace) -> None:
    config = _bootstrap()
    with _session(config) as session:
        factory = GmailGatewayFactory(config, session)
        classifier = LLMClassifier(config)

        def _run(account_id: str, lookback_days: int):
            return run_triage(
                config,
                session,
                factory,
                classifier,
                lookback_days=lookback_days,
                account_id=account_id,
            )

        stats = run_agent_cron(config, session, LocalTriageTrigger(_run), triggered_by="cli")
    print(stats.model_dump_json(indent=2))


def cmd_send_digests(args: argparse.Namespace) -> None:
    config = _bootstrap()
    with _session(config) as session:
        stats = send_digests(config, session, GmailGatewayFactory(config, session))
    print(stats.model_dump_json(indent=2))


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run(
        "inbox_triage.api:create_default_app",
        factory=True,
        host=args.host,
        port=args.port,
    )


# ---------------------------------------------------------------------------
# Commands: rules, settings, logs
# ---------------------------------------------------------------------------


def cmd_add_rule(args: argparse.Namespace) -> None:
    config = _bootstrap()
    with _session(config) as session:
        try:
            rule = create_rule(
                session,
                args.account,
                RuleType(args.type),
                args.pattern,
                RuleAction(args.action),
            )
        except AccountNotFoundError as e:
            print(str(e))
            raise SystemExit(1)
    print(f"Added rule {rule.id!r}: {rule.rule_type.value} {rule.pattern!r} -> {rule.action.value}")


def cmd_list_rules(args: argparse.Namespace) -> None:
    config = _bootstrap()
    with _session(config) as session:
        _render_rules_table(list_rules(session, args.account))


def cmd_set_settings(args: argparse.Namespace) -> None:
    config = _bootstrap()
    with _session(config) as session:
        try:
            get_account(session, args.account)
        except AccountNotFoundError as e:
            print(str(e))
            raise SystemExit(1)

        enabled = None
        if args.enable:
            enabled = True
        if args.disable:
            enabled = False

        save_settings(
            session,
            args.account,
            enabled=enabled,
            run_mode=RunMode(args.mode) if args.mode else None,
            interval_minutes=max(5, args.interval) if args.interval else None,
            timezone_name=args.timezone,
            window_start=args.window_start,
            window_end=args.window_end,
        )
    print(f"Updated settings for {args.account!r}.")


def cmd_show_logs(args: argparse.Namespace) -> None:
    config = _bootstrap()
    with _session(config) as session:
        _render_logs_table(list_logs(session, args.account, args.limit))


# ---------------------------------------------------------------------------
# Main CLI entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="inbox-triage",
        description="LLM-assisted Gmail inbox triage with drafts, labels and digests.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # serve
    p_serve = subparsers.add_parser("serve", help="Run the HTTP API.")
    p_serve.add_argument("--host", type=str, default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)

    # accounts
    subparsers.add_parser(
        "connect-account",
        help="Run the local OAuth consent flow and store the mailbox.",
    )
    subparsers.add_parser("list-accounts", help="List connected accounts.")

    # run-triage
    p_triage = subparsers.add_parser("run-triage", help="Triage recent inbox messages now.")
    p_triage.add_argument(
        "--days",
        type=int,
        default=None,
        help="Lookback window in days (default: LOOKBACK_DAYS, 14).",
    )
    p_triage.add_argument(
        "--account",
        type=str,
        default=None,
        help="Only triage this account id.",
    )

    # run-cron
    subparsers.add_parser(
        "run-cron",
        help="Evaluate every account's schedule and triage the due ones in-process.",
    )

    # send-digests
    subparsers.add_parser("send-digests", help="Email the activity digest for each account.")

    # add-rule
    p_rule = subparsers.add_parser("add-rule", help="Add a sender or subject rule.")
    p_rule.add_argument("account", type=str, help="Account id.")
    p_rule.add_argument(
        "type",
        type=str,
        choices=[t.value for t in RuleType],
        help="'from' (exact sender) or 'subject_contains'.",
    )
    p_rule.add_argument("pattern", type=str, help="Sender address or subject text.")
    p_rule.add_argument(
        "--action",
        type=str,
        choices=[a.value for a in RuleAction],
        default=RuleAction.SKIP.value,
        help="skip (no classification) or no_draft (classify, never draft). Default: skip.",
    )

    # list-rules
    p_list_rules = subparsers.add_parser("list-rules", help="List triage rules.")
    p_list_rules.add_argument("--account", type=str, default=None)

    # set-settings
    p_settings = subparsers.add_parser("set-settings", help="Update an account's schedule.")
    p_settings.add_argument("account", type=str, help="Account id.")
    p_settings.add_argument("--enable", action="store_true")
    p_settings.add_argument("--disable", action="store_true")
    p_settings.add_argument("--mode", type=str, choices=[m.value for m in RunMode], default=None)
    p_settings.add_argument("--interval", type=int, default=None, help="Minutes between runs (min 5).")
    p_settings.add_argument("--timezone", type=str, default=None, help="IANA zone, e.g. Europe/Berlin.")
    p_settings.add_argument("--window-start", type=str, default=None, help="HH:MM")
    p_settings.add_argument("--window-end", type=str, default=None, help="HH:MM")

    # show-logs
    p_logs = subparsers.add_parser("show-logs", help="Show recently processed messages.")
    p_logs.add_argument("--account", type=str, default=None)
    p_logs.add_argument("--limit", type=int, default=25)

    args = parser.parse_args()

    commands = {
        "serve": cmd_serve,
        "connect-account": cmd_connect_account,
        "list-accounts": cmd_list_accounts,
        "run-triage": cmd_run_triage,
        "run-cron": cmd_run_cron,
        "send-digests": cmd_send_digests,
        "add-rule": cmd_add_rule,
        "list-rules": cmd_list_rules,
        "set-settings": cmd_set_settings,
        "show-logs": cmd_show_logs,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.error(f"Unknown command: {args.command!r}")
    logging.debug("Running command %s", args.command)
    handler(args)


if __name__ == "__main__":
    main()
