"""
chattr client mode.
Connects to a chattr server over TLS and runs one chat session.
"""
import argparse
import socket
import ssl
import sys

from chat.console import Console
from chat.net import Connection
from chat.session import ChatSession
from common.config import load_config
from common.crypto import client_context, peer_fingerprint
from common.errors import ConfigError
from common.logs import setup_logging


def connect(host: str, port: int) -> ssl.SSLSocket:
    ''' Open the TLS stream; returns only once the handshake is complete '''
    raw = socket.create_connection((host, port))
    raw.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    try:
        return client_context().wrap_socket(raw, server_hostname=host)
    except (ssl.SSLError, OSError):
        raw.close()
        raise


def main():
    ap = argparse.ArgumentParser(description="chattr client: secure chat with file transfer and remote commands")
    ap.add_argument("host", help="server address")
    ap.add_argument("port", nargs="?", type=int, help="server port (default 12345)")
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

    print(f"Connecting to {args.host}:{config.port} ...")
    try:
        tls = connect(args.host, config.port)
    except (ssl.SSLError, OSError) as e:
        print(f"Connection failed. Is the server running at {args.host}:{config.port}? ({e})", file=sys.stderr)
        sys.exit(1)

    version, fp = peer_fingerprint(tls)
    print(f"Connected ({version}). Server certificate SHA-256: {fp}")
    print("Type /help or 'exit'.")
    try:
        ChatSession(Connection(tls), Console(), config, peer_name="Server").run()
    except KeyboardInterrupt:
        pass
    print("\nExiting.")


if __name__ == "__main__":
    main()
