import argparse
import logging
import os
import sys

import uvicorn

from .config import ConfigError, get_database_url, load_settings
from .models import Role
from .services.exceptions import ServiceError
from .services.users import set_role_by_email
from .storage import Store

logger = logging.getLogger("clubsphere")


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_or_exit():
    try:
        return load_settings()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)


def serve(host: str, port: int) -> None:
    from .api import create_app

    settings = _load_or_exit()
    uvicorn.run(create_app(settings), host=host, port=port)


def check_config() -> None:
    settings = _load_or_exit()
    print(f"Configuration OK (project {settings.firebase_project_id}, currency {settings.currency})")


def set_role(email: str, role: str) -> None:
    """Assign a role directly in the store, e.g. to bootstrap the first admin."""
    store = Store(get_database_url()).open()
    try:
        user = set_role_by_email(store, email, role)
    except ServiceError as exc:
        logger.error("%s", exc.message)
        sys.exit(1)
    finally:
        store.close()
    print(f"{user.email} is now {user.role.value}")


def main(argv=None) -> None:
    _configure_logging()
    parser = argparse.ArgumentParser(description="ClubSphere backend")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    p_serve.add_argument("--port", type=int, default=int(os.getenv("PORT", "3000")))

    sub.add_parser("check-config", help="Validate credentials and exit")

    p_role = sub.add_parser("set-role", help="Set a user's role")
    p_role.add_argument("email")
    p_role.add_argument("role", choices=[r.value for r in Role])

    args = parser.parse_args(argv)

    if args.cmd == "serve":
        serve(args.host, args.port)
    elif args.cmd == "check-config":
        check_config()
    elif args.cmd == "set-role":
        set_role(args.email, args.role)


if __name__ == "__main__":
    main()
