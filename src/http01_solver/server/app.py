"""Challenge responder for one HTTP-01 token.

Answers ``GET /.well-known/acme-challenge/<token>`` with the key
authorization, but only for the configured token on the configured host.
Anything else is a 404 so a misrouted probe fails loudly instead of
validating the wrong domain.
"""

from __future__ import annotations

import structlog
from aiohttp import web

from http01_solver.services.solver.naming import ACME_CHALLENGE_PATH

logger = structlog.get_logger()

HEALTH_PATH = "/healthz"


class ChallengeResponder:
    """Request handlers bound to a single domain, token and key."""

    def __init__(self, domain: str, token: str, key: str) -> None:
        self.domain = domain.lower().rstrip(".")
        self.token = token
        self.key = key
        self._log = logger.bind(entity="solver_server", domain=self.domain)

    def host_matches(self, host: str | None) -> bool:
        """Compare a Host header against the domain, ignoring port and case."""
        if not host:
            return False
        if host.startswith("["):
            hostname = host.split("]", 1)[0] + "]"
        else:
            hostname = host.rsplit(":", 1)[0] if host.count(":") == 1 else host
        return hostname.lower().rstrip(".") == self.domain

    async def handle_challenge(self, request: web.Request) -> web.Response:
        token = request.match_info["token"]
        if token != self.token:
            self._log.info("unknown_token", token=token)
            raise web.HTTPNotFound()
        if not self.host_matches(request.host):
            self._log.info("host_mismatch", host=request.host)
            raise web.HTTPNotFound()
        self._log.info("served_challenge", token=token, remote=request.remote)
        return web.Response(text=self.key, content_type="text/plain")

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.Response(text="ok", content_type="text/plain")


def create_app(domain: str, token: str, key: str) -> web.Application:
    """Build the responder application.

    Args:
        domain: DNS name the CA will request.
        token: Challenge token expected in the path.
        key: Key authorization returned in the body.
    """
    responder = ChallengeResponder(domain, token, key)
    app = web.Application()
    app.router.add_get(f"{ACME_CHALLENGE_PATH}/{{token}}", responder.handle_challenge)
    app.router.add_get(HEALTH_PATH, responder.handle_health)
    return app


def run_server(domain: str, token: str, key: str, listen_port: int = 8089) -> None:
    """Serve the challenge until interrupted."""
    logger.info("starting_solver_server", domain=domain, port=listen_port)
    web.run_app(
        create_app(domain, token, key),
        host="0.0.0.0",  # noqa: S104
        port=listen_port,
        print=None,
    )
    logger.info("solver_server_stopped", domain=domain)
