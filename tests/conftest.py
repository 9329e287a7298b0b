"""Root pytest configuration: loopback sockets and running sessions."""

from __future__ import annotations

import socket

import pytest

from tests.utils import Peer, WireTap, make_config


@pytest.fixture
def tcp_pair():
    """Two connected TCP sockets over loopback."""
    with socket.create_server(("127.0.0.1", 0)) as srv:
        client = socket.create_connection(srv.getsockname())
        server, _ = srv.accept()
    yield client, server
    for s in (client, server):
        try:
            s.close()
        except OSError:
            pass


@pytest.fixture
def peers(tcp_pair, tmp_path):
    """Operators A and B, both sessions running against each other."""
    a_sock, b_sock = tcp_pair
    a = Peer(a_sock, make_config(tmp_path, "home_a"), "Server")
    b = Peer(b_sock, make_config(tmp_path, "home_b"), "Client")
    a.start()
    b.start()
    yield a, b
    a.stop()
    b.stop()


@pytest.fixture
def tapped(tcp_pair, tmp_path):
    """A running session on one end, a raw WireTap on the other."""
    tap_sock, sess_sock = tcp_pair
    peer = Peer(sess_sock, make_config(tmp_path, "home"), "Peer")
    peer.start()
    yield peer, WireTap(tap_sock)
    peer.stop()
