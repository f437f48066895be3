"""Echo server: supervise a pool of TCP echo workers with Shepherd.

Each worker thread accepts connections on a shared, pre-bound socket, so the
port stays open while the master replaces workers during a reload. Run it
with:

    python examples/echo_server.py etc/shepherd.conf

then control it from another terminal:

    shepherd -c etc/shepherd.conf -s status
    shepherd -c etc/shepherd.conf -s reload
    shepherd -c etc/shepherd.conf -s stop
"""

from __future__ import annotations

import socket
import sys

from shepherd import MasterOrchestrator, ServiceContext
from shepherd._internal.logging import apply_log_settings, setup_logging
from shepherd._internal.pidfile import remove_pidfile, write_pidfile


def serve_echo(listener: socket.socket) -> None:
    """Echo each connection's bytes back until the peer closes."""
    while True:
        conn, _addr = listener.accept()
        with conn:
            while data := conn.recv(4096):
                conn.sendall(data)


def main(confile: str) -> int:
    setup_logging()
    context = ServiceContext.create(confile=confile)
    snapshot = context.load_snapshot()
    apply_log_settings(snapshot.log)

    listener = socket.create_server(("127.0.0.1", snapshot.listen_port), reuse_port=True)
    write_pidfile(context.pidfile)
    try:
        return MasterOrchestrator(context).start(serve_echo, listener)
    finally:
        listener.close()
        remove_pidfile(context.pidfile, context.pid)


if __name__ == "__main__":
    sys.exit(main(sys.argv[1] if len(sys.argv) > 1 else "etc/shepherd.conf"))
