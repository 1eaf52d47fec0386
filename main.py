import asyncio
import argparse
import logging
import sys

import p2p_protocol as P2P
from console import CommandShell
from dashboard import start_dashboard
from errors import RegistrationTimeout, TransportError
from peer_node import PeerNode
from tracker import TrackerNode

logger = logging.getLogger("Main")


def setup_logging(role: str, level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(f"{role}.log", mode='w')
        ]
    )


def parse_endpoint(value: str) -> tuple:
    host, _, port = value.rpartition(":")
    if not host or not port.isdigit():
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {value!r}")
    return host, int(port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="P2P file sharing over UDP (tracker or peer)")
    parser.add_argument('--role', choices=['tracker', 'peer'], required=True, help="Process role")
    parser.add_argument('--host', default="0.0.0.0", help="Address to bind")
    parser.add_argument('--port', type=int, help=f"UDP port to bind (tracker default {P2P.DEFAULT_TRACKER_PORT}, peer default ephemeral)")
    parser.add_argument('--tracker', type=parse_endpoint, default=("localhost", P2P.DEFAULT_TRACKER_PORT),
                        help="Tracker address (host:port)")
    parser.add_argument('--files', help="Directory of files to share (peer)")
    parser.add_argument('--downloads', default="downloads", help="Where downloaded files are written (peer)")
    parser.add_argument('--dashboard-port', type=int, help="Serve the status dashboard on this TCP port")
    parser.add_argument('--max-transfers', type=int, default=P2P.MAX_CONCURRENT_TRANSFERS,
                        help="Concurrent transfer sessions")
    parser.add_argument('--retransmit-timeout', type=float, default=P2P.RETRANSMIT_TIMEOUT,
                        help="Seconds before an unacknowledged fragment is resent")
    parser.add_argument('--max-retries', type=int, default=P2P.MAX_RETRANSMISSIONS,
                        help="Retransmissions of one fragment before the transfer is abandoned")
    parser.add_argument('--log-level', default="INFO")
    return parser


async def run_tracker(args) -> int:
    port = args.port if args.port is not None else P2P.DEFAULT_TRACKER_PORT
    tracker = TrackerNode(args.host, port)
    await tracker.start()

    runner = None
    if args.dashboard_port:
        runner = await start_dashboard(args.dashboard_port, registry=tracker.registry)

    try:
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        pass
    finally:
        await tracker.stop()
        if runner:
            await runner.cleanup()
    return 0


async def run_peer(args) -> int:
    node = PeerNode(args.host, args.port or 0, args.tracker, args.files,
                    downloads_dir=args.downloads,
                    max_concurrent=args.max_transfers,
                    retransmit_timeout=args.retransmit_timeout,
                    max_retries=args.max_retries)
    try:
        await node.start()
    except (FileNotFoundError, TransportError, RegistrationTimeout) as e:
        logger.error(f"{e} Exiting...")
        await node.stop()
        return 1

    runner = None
    if args.dashboard_port:
        runner = await start_dashboard(args.dashboard_port)

    shell = CommandShell(node)
    shell_task = asyncio.create_task(shell.run())
    stopped_task = asyncio.create_task(node.stopped.wait())
    try:
        await asyncio.wait({shell_task, stopped_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        shell_task.cancel()
        stopped_task.cancel()
        await node.stop()
        if runner:
            await runner.cleanup()

    if node.fatal_error:
        logger.error(f"Fatal: {node.fatal_error}")
        return 1
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.role == "peer" and not args.files:
        parser.error("--files is required for a peer")

    setup_logging(args.role, args.log_level)
    logger.info(f"==================================================")
    logger.info(f"Starting {args.role.upper()}")
    logger.info(f"==================================================")

    runner = run_tracker if args.role == "tracker" else run_peer
    try:
        return asyncio.run(runner(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
