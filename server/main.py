"""
chattr server mode.
Listens for one client at a time, runs the chat session, then waits for the
next client. Only one session is ever live.
"""
import argparse
import socket
import ssl
import sys

from chat.console import Console
from chat.net import Connection
from chat.session import ChatSession
from common.config import load_config
from common.crypto import ensure_cert, pem_fingerprint, server_context
from common.errors import ConfigError
from common.logs import get_logger, setup_logging

HOST = "0.0.0.0"

log = get_logger("server")


def serve(config, console: Console):
    ''' Accept clients one after another until interrupted '''
    pem = ensure_cert(config.cert_dir)
    ctx = server_context(pem)
    print(f"Certificate fingerprint (SHA-256): {pem_fingerprint(pem)}")

    with socket.create_server((HOST, config.port)) as srv:
        while True:
            print(f"Starting chattr server on port {config.port}... (Ctrl+C to stop)")
            print("Waiting for a client to connect...")
            raw, addr = srv.accept()   # returns only once a client is there
            raw.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            try:
                tls = ctx.wrap_socket(raw, server_side=True)
            except (ssl.SSLError, OSError) as e:
                log.warning("TLS handshake with %s failed: %s", addr[0], e)
                print(f"Handshake with {addr[0]} failed: {e}")
                raw.close()
                continue

            print(f"Client {addr[0]} connected. (Type /help or 'exit')")
            session = ChatSession(Connection(tls), console, config, peer_name="Client")
            session.run()
            print("Session ended. Server is ready for a new connection.")


def main():
    ap = argparse.ArgumentParser(description="chattr server: secure chat with file transfer and remote commands")
    ap.add_argument("port", nargs="?", type=int, help="port to listen on (default 12345)")
    ap.add_argument("--live-port", type=int, help="port for /live sessions (default 12346)")
    ap.add_argument("-v", "--verbose", type=int, help="log verbosity 0-3")
    ap.add_argument("--log", dest="log_file", help="write diagnostics to this file")
    args = ap.parse_args()

    try:
        config = load_config(port=args.port, live_port=args.live_port,
                             verbose=args.verbose, log_file=args.log_file)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    setup_logging(config.verbose, config.log_file)

    try:
        serve(config, Console())
    except OSError as e:
        print(f"Error: cannot listen on port {config.port}: {e.strerror or e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nExiting.")


if __name__ == "__main__":
    main()
