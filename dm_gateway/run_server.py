#!/usr/bin/env python3
"""
Run the Digital Matter gateway
Usage: dm-gateway [port]
"""
import sys
import asyncio
import logging

from dm_gateway.config import get_settings
from dm_gateway.gateway_server import GatewayServer
from dm_gateway.logconfig import configure_logging

logger = logging.getLogger(__name__)


async def main(argv=None):
    """Run the gateway until interrupted"""
    argv = sys.argv[1:] if argv is None else argv

    settings = get_settings()
    if argv:
        settings = settings.model_copy(update={'PORT': int(argv[0])})

    configure_logging(settings)

    server = GatewayServer(settings)
    try:
        await server.serve_forever()
    finally:
        await server.shutdown()


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nGateway stopped")


if __name__ == "__main__":
    cli()
