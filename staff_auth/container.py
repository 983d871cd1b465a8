from __future__ import annotations

import logging
from dataclasses import dataclass

from staff_auth.core.clock import Clock, SystemClock
from staff_auth.core.settings import Settings, get_settings
from staff_auth.db.session import build_session_factory
from staff_auth.services.audit import AuditSink, StoreAuditSink
from staff_auth.services.login import LoginService
from staff_auth.services.messaging import MessageDispatcher, SmtpTwilioDispatcher
from staff_auth.services.mfa import SecondFactorService
from staff_auth.services.one_time_codes import CodeFlows, OneTimeCodeEngine
from staff_auth.services.password_reset import PasswordResetService
from staff_auth.services.sessions import SessionService
from staff_auth.services.tokens import TokenIssuer
from staff_auth.storage.base import AuthStore
from staff_auth.storage.sql import SqlAlchemyAuthStore

logger = logging.getLogger(__name__)


@dataclass
class AuthServices:
    settings: Settings
    store: AuthStore
    dispatcher: MessageDispatcher
    audit: AuditSink
    clock: Clock
    tokens: TokenIssuer
    sessions: SessionService
    codes: OneTimeCodeEngine
    code_flows: CodeFlows
    login: LoginService
    second_factor: SecondFactorService
    password_reset: PasswordResetService

    async def aclose(self) -> None:
        close = getattr(self.dispatcher, "aclose", None)
        if close is not None:
            await close()


def build_services(
    settings: Settings | None = None,
    *,
    store: AuthStore | None = None,
    dispatcher: MessageDispatcher | None = None,
    audit: AuditSink | None = None,
    clock: Clock | None = None,
) -> AuthServices:
    """Wire every collaborator explicitly; the caller owns the result's lifecycle."""
    settings = settings or get_settings()
    clock = clock or SystemClock()
    if store is None:
        store = SqlAlchemyAuthStore(build_session_factory(settings))
    dispatcher = dispatcher or SmtpTwilioDispatcher(settings)
    audit = audit or StoreAuditSink(store, clock)

    tokens = TokenIssuer(settings, clock)
    sessions = SessionService(store, tokens, settings, audit, clock)
    codes = OneTimeCodeEngine(settings, dispatcher, clock)
    logger.debug("Auth services built store=%s dispatcher=%s", type(store).__name__, type(dispatcher).__name__)
    return AuthServices(
        settings=settings,
        store=store,
        dispatcher=dispatcher,
        audit=audit,
        clock=clock,
        tokens=tokens,
        sessions=sessions,
        codes=codes,
        code_flows=CodeFlows(store, codes, sessions, tokens, audit, clock),
        login=LoginService(store, settings, tokens, sessions, audit, clock),
        second_factor=SecondFactorService(store, settings, audit, clock),
        password_reset=PasswordResetService(store, settings, codes, dispatcher, audit, clock),
    )
