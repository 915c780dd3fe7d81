"""
Peer credential checks for Unix domain socket connections.

Only processes running as the same user may talk to the engine host or the
delivery process.
"""

import logging
import os
import socket
import struct
import sys
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# macOS <sys/un.h>
SOL_LOCAL = 0
LOCAL_PEERCRED = 1
# struct xucred: version, uid, ngroups, groups[16]
XUCRED_FORMAT = "@IIh16I"


@dataclass(frozen=True)
class PeerCredentials:
    """Identity of the process on the other end of a socket."""

    pid: int | None
    uid: int
    gid: int


def _linux_credentials(sock: socket.socket) -> PeerCredentials:
    size = struct.calcsize("3i")
    raw = sock.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, size)
    pid, uid, gid = struct.unpack("3i", raw)
    return PeerCredentials(pid=pid, uid=uid, gid=gid)


def _macos_credentials(sock: socket.socket) -> PeerCredentials:
    raw = sock.getsockopt(SOL_LOCAL, LOCAL_PEERCRED, struct.calcsize(XUCRED_FORMAT))
    fields = struct.unpack(XUCRED_FORMAT, raw)
    _version, uid, ngroups = fields[:3]
    gid = fields[3] if ngroups > 0 else -1
    # LOCAL_PEERCRED carries no pid
    return PeerCredentials(pid=None, uid=uid, gid=gid)


def get_peer_credentials(sock: socket.socket) -> PeerCredentials | None:
    """Read the peer's credentials, or None if the platform or socket can't tell."""
    try:
        if sys.platform.startswith("linux"):
            return _linux_credentials(sock)
        if sys.platform == "darwin":
            return _macos_credentials(sock)
    except (OSError, struct.error) as e:
        logger.debug("Could not read peer credentials: %s", e)
        return None

    logger.debug("Peer credentials unsupported on %s", sys.platform)
    return None


def verify_same_user(sock: socket.socket) -> bool:
    """True if the peer runs under the current user id."""
    creds = get_peer_credentials(sock)
    if creds is None:
        return False
    if creds.uid != os.getuid():
        logger.warning(
            "Peer uid %d does not match current uid %d (pid=%s)",
            creds.uid,
            os.getuid(),
            creds.pid,
        )
        return False
    return True
