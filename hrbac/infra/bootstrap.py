from __future__ import annotations

import argparse
import sys

import structlog

from hrbac.domain.errors import ConflictError, NotFoundError
from hrbac.domain.models import BootstrapAdminRequest, OrgCreate
from hrbac.infra.log import configure_logging
from hrbac.services.identity_service import IdentityService

logger = structlog.get_logger(__name__)


def bootstrap_global_admin(org_name: str, username: str, password: str) -> tuple[str, str]:
    """Create a root org and its first user holding the global admin permission.

    Returns ``(org_id, user_id)``.
    """
    service = IdentityService()
    org = service.create_org(OrgCreate(name=org_name))
    user = service.bootstrap_admin(
        BootstrapAdminRequest(org_id=org.id, username=username, password=password),
        global_admin=True,
    )
    logger.info("global admin bootstrapped", org_id=org.id, user_id=user.id, username=user.username)
    return org.id, user.id


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create the platform org and its global admin.")
    parser.add_argument("--org-name", required=True)
    parser.add_argument("--username", required=True)
    parser.add_argument("--password", required=True)
    args = parser.parse_args(argv)

    try:
        org_id, user_id = bootstrap_global_admin(args.org_name, args.username, args.password)
    except (ConflictError, NotFoundError) as exc:
        logger.error("global admin bootstrap failed", error=str(exc))
        return 1
    print(f"org_id={org_id} user_id={user_id}")
    return 0


if __name__ == "__main__":
    configure_logging()
    sys.exit(main())
