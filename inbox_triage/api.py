"""
HTTP entry points: cron runner, triage job, digest job, rules and settings.
"""

import logging
import math
from typing import Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session, sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from .classifier import LLMClassifier
from .config import Config, load_config
from .cron import HttpTriageTrigger, run_agent_cron
from .database import create_db_engine, create_session_factory, init_db
from .digest import send_digests
from .gmail_client import GmailGatewayFactory
from .logging_config import setup_logging
from .models import RuleAction, RuleType, RunMode
from .scheduling import parse_hhmm_to_minutes
from .security import get_config, require_cron_secret
from .storage import (
    AccountNotFoundError,
    create_rule,
    get_account,
    list_logs,
    list_rules,
    save_settings,
)
from .triage_engine import run_triage

logger = logging.getLogger(__name__)

MIN_INTERVAL_MINUTES = 5


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class RuleCreate(BaseModel):
    gmail_account_id: str = Field(
        validation_alias=AliasChoices("gmail_account_id", "gmailAccountId"),
        min_length=1,
    )
    rule_type: RuleType = Field(validation_alias=AliasChoices("rule_type", "ruleType"))
    pattern: str
    action: RuleAction = RuleAction.SKIP

    @field_validator("pattern")
    @classmethod
    def pattern_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("pattern is required")
        return v


class SettingsUpdate(BaseModel):
    gmail_account_id: str = Field(
        validation_alias=AliasChoices("gmailAccountId", "gmail_account_id"),
        min_length=1,
    )
    enabled: bool = True
    run_mode: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("runMode", "run_mode"),
    )
    interval_minutes: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("intervalMinutes", "periodMinutes", "interval_minutes"),
    )
    timezone: Optional[str] = None
    window_start: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("windowStart", "window_start"),
    )
    window_end: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("windowEnd", "window_end"),
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("gmail_account_id")
    @classmethod
    def strip_account_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("gmailAccountId required")
        return v

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {v!r}")
        return v

    @field_validator("window_start", "window_end")
    @classmethod
    def valid_time(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and parse_hhmm_to_minutes(v) is None:
            raise ValueError("expected HH:MM")
        return v

    def resolved_run_mode(self) -> RunMode:
        # Unknown modes fall back to periodic.
        if self.run_mode in (RunMode.PERIODIC.value, RunMode.INSTANT.value):
            return RunMode(self.run_mode)
        return RunMode.PERIODIC

    def resolved_interval(self, default: int) -> int:
        if self.interval_minutes is None or not math.isfinite(self.interval_minutes):
            return default
        return max(MIN_INTERVAL_MINUTES, int(math.floor(self.interval_minutes)))


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_gateway_factory(
    config: Config = Depends(get_config),
    db: Session = Depends(get_db),
):
    return GmailGatewayFactory(config, db)


def get_classifier(config: Config = Depends(get_config)):
    return LLMClassifier(config)


def get_triage_trigger(
    _auth: None = Depends(require_cron_secret),
    config: Config = Depends(get_config),
):
    if not config.app_url:
        raise HTTPException(status_code=500, detail="APP_URL not configured")
    return HttpTriageTrigger(config)


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse({"error": "; ".join(messages) or "Bad request"}, status_code=400)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(
    config: Optional[Config] = None,
    session_factory: Optional[sessionmaker] = None,
) -> FastAPI:
    config = config or load_config()

    if session_factory is None:
        engine = create_db_engine(config.database_url)
        init_db(engine)
        session_factory = create_session_factory(engine)

    app = FastAPI(title="Inbox Triage Assistant")
    app.state.config = config
    app.state.session_factory = session_factory

    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/api/cron/agent-runner", dependencies=[Depends(require_cron_secret)])
    def agent_runner(
        trigger=Depends(get_triage_trigger),
        config: Config = Depends(get_config),
        db: Session = Depends(get_db),
    ):
        stats = run_agent_cron(config, db, trigger)
        return stats.model_dump(mode="json")

    @app.get("/api/jobs/run-triage", dependencies=[Depends(require_cron_secret)])
    def run_triage_job(
        lookback_days: Optional[int] = Query(default=None, alias="lookbackDays", ge=1, le=365),
        gmail_account_id: Optional[str] = Query(default=None, alias="gmailAccountId"),
        config: Config = Depends(get_config),
        db: Session = Depends(get_db),
        gateway_factory=Depends(get_gateway_factory),
        classifier=Depends(get_classifier),
    ):
        try:
            stats = run_triage(
                config,
                db,
                gateway_factory,
                classifier,
                lookback_days=lookback_days,
                account_id=gmail_account_id,
            )
        except AccountNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        if not stats.ok:
            return JSONResponse({"error": stats.error, **stats.model_dump(mode="json")}, status_code=500)
        return stats.model_dump(mode="json")

    @app.get("/api/jobs/send-summaries", dependencies=[Depends(require_cron_secret)])
    def send_summaries_job(
        config: Config = Depends(get_config),
        db: Session = Depends(get_db),
        gateway_factory=Depends(get_gateway_factory),
    ):
        stats = send_digests(config, db, gateway_factory)
        return stats.model_dump(mode="json")

    @app.post("/api/rules")
    def create_rule_endpoint(body: RuleCreate, db: Session = Depends(get_db)):
        try:
            rule = create_rule(db, body.gmail_account_id, body.rule_type, body.pattern, body.action)
        except AccountNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"ok": True, "rule": rule.model_dump(mode="json")}

    @app.get("/api/rules", dependencies=[Depends(require_cron_secret)])
    def list_rules_endpoint(
        gmail_account_id: Optional[str] = Query(default=None, alias="gmailAccountId"),
        db: Session = Depends(get_db),
    ):
        return {"rules": [r.model_dump(mode="json") for r in list_rules(db, gmail_account_id)]}

    @app.post("/api/settings/agent")
    def update_settings(
        body: SettingsUpdate,
        config: Config = Depends(get_config),
        db: Session = Depends(get_db),
    ):
        try:
            get_account(db, body.gmail_account_id)
        except AccountNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

        save_settings(
            db,
            body.gmail_account_id,
            enabled=body.enabled,
            run_mode=body.resolved_run_mode(),
            interval_minutes=body.resolved_interval(config.default_interval_minutes),
            timezone_name=body.timezone,
            window_start=body.window_start,
            window_end=body.window_end,
        )
        return {"ok": True}

    @app.get("/api/logs", dependencies=[Depends(require_cron_secret)])
    def list_logs_endpoint(
        gmail_account_id: Optional[str] = Query(default=None, alias="gmailAccountId"),
        limit: int = Query(default=50, ge=1, le=500),
        db: Session = Depends(get_db),
    ):
        return {"logs": [e.model_dump(mode="json") for e in list_logs(db, gmail_account_id, limit)]}

    return app


def create_default_app() -> FastAPI:
    """Factory for `uvicorn --factory inbox_triage.api:create_default_app`."""
    config = load_config()
    setup_logging(config.log_level, config.log_to_file)
    return create_app(config)
