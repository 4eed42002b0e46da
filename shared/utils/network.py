# shared/utils/network.py
import socket


def get_local_ip_address(default: str = "127.0.0.1") -> str:
    """
    Best-effort non-loopback IPv4 address of this host.

    Connecting a UDP socket sends nothing; it only makes the kernel pick the
    outbound interface.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("10.255.255.255", 1))
        address = sock.getsockname()[0]
    except OSError:
        return default
    finally:
        sock.close()

    if address.startswith("127.") or address == "0.0.0.0":
        return default
    return address
