import argparse
import asyncio
import logging
import sys

from . import api_client
from .config import hypervisor_config, service_config
from .provider import get_client_provider, close_client_provider


logging.basicConfig(
    level=getattr(logging, service_config.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def check_health():
    return await api_client.test_connection(
        hypervisor_config.host,
        hypervisor_config.token_id,
        hypervisor_config.token_secret,
        timeout=hypervisor_config.test_timeout
    )


async def list_resources(tenant_id=None):
    client = get_client_provider().get_client()
    try:
        if tenant_id:
            return await client.list_resources_for_tenant(tenant_id)
        return await client.list_resources()
    finally:
        await close_client_provider()


def run_sweep():
    from db.config import SessionLocal
    from services.billing_service import BillingService

    session = SessionLocal()
    try:
        return BillingService(session).run_sweep()
    finally:
        session.close()


def main():
    parser = argparse.ArgumentParser(
        description="ComputeCloud hypervisor tools"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("health", help="Check hypervisor connectivity")
    resources = subparsers.add_parser("resources", help="List instances on the cluster")
    resources.add_argument("--tenant", help="Only instances owned by this tenant")
    subparsers.add_parser("sweep", help="Run one billing sweep")

    args = parser.parse_args()

    if args.command == "health":
        if not hypervisor_config.is_configured:
            print("✗ Hypervisor connection is not configured")
            sys.exit(1)
        result = asyncio.run(check_health())
        if result["success"]:
            print(f"✓ {hypervisor_config.host}: {result['message']}")
        else:
            print(f"✗ {hypervisor_config.host}: {result['message']}")
            sys.exit(1)

    elif args.command == "resources":
        for r in asyncio.run(list_resources(args.tenant)):
            kind = "template" if r.template else r.instance_type
            print(f"{r.instance_id}\t{r.node}\t{kind}\t{r.name}\t{r.cores} cores\t{r.memory_mb} MB\t{r.disk_gb} GB")

    elif args.command == "sweep":
        logger.info("Running billing sweep...")
        sweep = run_sweep()
        print(f"{sweep.sweep_id}: {sweep.processed_count} charged, {sweep.failed_count} failed")
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
