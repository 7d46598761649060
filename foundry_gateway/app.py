"""
Foundry Gateway command-line launcher.
Reads configuration, then runs the API server in the foreground. With
--open the server runs in a background thread and a browser is pointed at
it once it answers.
"""
import argparse
import sys
import threading
import time
import webbrowser

import httpx

from .config import GatewayConfig
from .server import run_server


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="foundry-gateway",
        description="HTTP/SSE gateway for a local inference engine.",
    )
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--host", help="bind address")
    parser.add_argument("--port", type=int, help="listen port")
    parser.add_argument("--cli", dest="cli_path", help="control-plane CLI executable")
    parser.add_argument("--log-level", help="critical, error, warning, info or debug")
    parser.add_argument(
        "--keep-resident",
        action="store_true",
        help="do not unload models that are already resident at startup",
    )
    parser.add_argument("--open", action="store_true", help="open a browser once the server is up")
    return parser


def resolve_config(args: argparse.Namespace) -> GatewayConfig:
    config = GatewayConfig.load(args.config)
    overrides = {
        name: value
        for name, value in (
            ("host", args.host),
            ("port", args.port),
            ("cli_path", args.cli_path),
            ("log_level", args.log_level),
        )
        if value is not None
    }
    if args.keep_resident:
        overrides["unload_on_startup"] = False
    config = config.with_overrides(**overrides)
    config.validate()
    return config


def wait_for_server(port, timeout=15):
    url = f"http://127.0.0.1:{port}/status"
    start_time = time.time()
    while time.time() - start_time < timeout:
        try:
            if httpx.get(url, timeout=2.0).status_code == 200:
                return True
        except httpx.HTTPError:
            time.sleep(0.5)
    return False


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        config = resolve_config(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    if not args.open:
        run_server(config)
        return 0

    server_thread = threading.Thread(target=run_server, args=(config,), daemon=True)
    server_thread.start()
    if not wait_for_server(config.port):
        print("Warning: Server didn't start in time.")
    url = f"http://127.0.0.1:{config.port}"
    print(f"Foundry Gateway running at: {url}")
    webbrowser.open(url)
    try:
        server_thread.join()
    except KeyboardInterrupt:
        print("\nShutting down Foundry Gateway...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
