from __future__ import annotations

import argparse
import asyncio
import secrets
import signal
import sys
from pathlib import Path
from typing import Optional

from duet.util.deps import check_dependencies


def security_self_check(logger) -> bool:
    from duet.crypto.envelope import require_aead, decrypt, encrypt, generate_key
    from duet.crypto.handshake import StaticIdentity, hs_accept, hs_offer, require_crypto
    from duet.crypto.primitives import b64url_decode
    from duet.errors import DecryptionError

    checks = []
    checks.append(("Python >= 3.10", sys.version_info >= (3, 10)))

    try:
        test = [secrets.randbits(16) for _ in range(10)]
        checks.append(("Random source", any(x != 0 for x in test)))
    except Exception:
        checks.append(("Random source", False))

    try:
        require_crypto()
        checks.append(("X25519", True))
    except Exception:
        checks.append(("X25519", False))

    try:
        require_aead()
        checks.append(("AEAD (AES-256-GCM)", True))
    except Exception:
        checks.append(("AEAD (AES-256-GCM)", False))

    try:
        identity = StaticIdentity.generate()
        offer = hs_offer(identity.public_key_raw)
        checks.append(("Key exchange agreement", hs_accept(identity.private_key, offer.message) == offer.session_key))
    except Exception:
        checks.append(("Key exchange agreement", False))

    try:
        wire = encrypt(generate_key(), {"probe": True})
        decrypt(generate_key(), wire)
        checks.append(("Wrong key rejected", False))
    except DecryptionError:
        checks.append(("Wrong key rejected", True))

    try:
        b64url_decode("aW52YWxpZCBwYWRkaW5n")
        checks.append(("Base64 strict decode (valid)", True))
    except Exception:
        checks.append(("Base64 strict decode (valid)", False))

    try:
        b64url_decode("invalid!@#$")
        checks.append(("Base64 strict decode (invalid)", False))
    except ValueError:
        checks.append(("Base64 strict decode (invalid)", True))

    all_ok = all(ok for _, ok in checks)
    for name, ok in checks:
        (logger.info if ok else logger.error)("security_check", check=name, status=("OK" if ok else "FAILED"))

    if not all_ok:
        raise RuntimeError("Security self-check failed")
    logger.info("security_self_check_passed")
    return True


class ConsoleSpeaker:
    """Prints response fragments instead of playing them."""

    def speak(self, text: str) -> None:
        print(f"< {text}", flush=True)

    def stop(self) -> None:
        pass

    async def wait_done(self) -> None:
        return None


def _install_stop(stop: asyncio.Event, logger):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.debug("signal_handler_unavailable", signal=sig.name)


async def run_serve(args, logger):
    from duet.config import load_settings
    from duet.crypto.handshake import StaticIdentity
    from duet.executor.connector import ExecutorConnector

    settings = load_settings(Path(args.config_dir) if args.config_dir else None)
    executor = settings.executor
    if args.relay:
        executor.relay_url = args.relay
    if args.work_dir:
        executor.work_dir = args.work_dir

    identity = StaticIdentity.load_or_create(executor.identity_path, force_new=args.new, logger=logger)
    connector = ExecutorConnector(identity, executor)

    print("")
    print("━━━ duet executor ━━━")
    print(f"Relay: {executor.relay_url}")
    print(f"Room:  {identity.room}")
    print("")
    print(f"Pairing URL: {connector.pairing.to_url()}")
    print("Open this URL on the initiator to pair.")
    print("")

    stop = asyncio.Event()
    _install_stop(stop, logger)
    await connector.run(stop)


async def run_ask(args, logger):
    from duet.config import load_settings
    from duet.client.initiator import InitiatorClient
    from duet.dialogue.arbiter import DialogueArbiter
    from duet.errors import ProtocolError, user_message
    from duet.protocol.pairing import PairingInfo

    settings = load_settings(Path(args.config_dir) if args.config_dir else None)
    pairing = PairingInfo.from_url(args.pairing_url)
    client = InitiatorClient(pairing, settings.client.timeouts)
    client.on_error = lambda e: print(f"! {user_message(e)}", flush=True)
    client.on_server_info = lambda info: print(f"Connected to {info.hostname}:{info.work_dir}", flush=True)

    def on_event(event):
        if event.kind == "error":
            print(f"! {event.text}", flush=True)
        elif event.kind == "command":
            print(f"* {event.text}", flush=True)

    arbiter = DialogueArbiter(client, speaker=ConsoleSpeaker(), on_event=on_event)
    arbiter.attach(client)

    try:
        await client.connect()
    except ProtocolError as e:
        print(f"! {user_message(e)}", flush=True)
    if not await client.wait_paired():
        print("! Pairing failed. Check that the server is running and scan the code again.", flush=True)
        await client.close()
        return

    try:
        if args.text:
            arbiter.submit(args.text)
            await arbiter.drain()
            return

        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            arbiter.submit(line)
        await arbiter.drain()
    finally:
        if arbiter.session_id is not None and client.is_paired:
            await client.send_session_end(arbiter.session_id)
        arbiter.stop()
        await client.close()


def main(argv: Optional[list] = None):
    ok, missing = check_dependencies()
    if not ok:
        print("ERROR: Missing dependencies:")
        for dep in missing:
            print(f"  - {dep}")
        print("\nInstall with:")
        print(f"pip install {' '.join(missing)}")
        sys.exit(1)

    import structlog
    from duet.errors import DuetError
    from duet.logs import configure_logging

    parser = argparse.ArgumentParser(description="duet: encrypted voice turns over an untrusted relay")
    parser.add_argument("--log-level", default="info")
    parser.add_argument("--console-logs", action="store_true", help="Human-readable logs instead of JSON")
    subparsers = parser.add_subparsers(dest="command", required=True)

    relay_parser = subparsers.add_parser("relay", help="Run the untrusted relay server")
    relay_parser.add_argument("--host")
    relay_parser.add_argument("--port", type=int)
    relay_parser.add_argument("--config-dir")

    serve_parser = subparsers.add_parser("serve", help="Run the executor and print its pairing URL")
    serve_parser.add_argument("--relay", help="Relay websocket URL")
    serve_parser.add_argument("--new", action="store_true", help="Generate a new pairing key")
    serve_parser.add_argument("--work-dir")
    serve_parser.add_argument("--config-dir")

    ask_parser = subparsers.add_parser("ask", help="Pair with an executor and send turns from stdin")
    ask_parser.add_argument("pairing_url")
    ask_parser.add_argument("--text", help="Send a single turn and exit")
    ask_parser.add_argument("--config-dir")

    subparsers.add_parser("check", help="Run security self-check")

    args = parser.parse_args(argv)
    configure_logging(args.log_level, json_output=not args.console_logs)
    logger = structlog.get_logger()

    if args.command == "check":
        security_self_check(logger)
        print("✓ Security self-check passed")
        return

    try:
        if args.command == "relay":
            security_self_check(logger)
            import uvicorn
            from duet.config import load_settings
            from duet.relay.server import build_relay_app

            settings = load_settings(Path(args.config_dir) if args.config_dir else None).relay
            host = args.host or settings.host
            port = args.port or settings.port
            app = build_relay_app(settings)
            logger.info("starting_relay", host=host, port=port)
            uvicorn.run(app, host=host, port=port, log_config=None)
            return

        if args.command == "serve":
            security_self_check(logger)
            asyncio.run(run_serve(args, logger))
            return

        if args.command == "ask":
            security_self_check(logger)
            asyncio.run(run_ask(args, logger))
            return
    except KeyboardInterrupt:
        logger.info("shutdown", reason="keyboard_interrupt")
        print("\nShutting down...")
    except DuetError as e:
        logger.error("fatal_error", error=str(e), kind=type(e).__name__)
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
