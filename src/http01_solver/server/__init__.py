"""HTTP server run inside the solver pod."""

from http01_solver.server.app import HEALTH_PATH, ChallengeResponder, create_app, run_server

__all__ = ["HEALTH_PATH", "ChallengeResponder", "create_app", "run_server"]
