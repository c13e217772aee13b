# vfsdiscover.py - read-only network probes for VFShare
#
# - discover_servers(): one-shot mDNS browse for _smb._tcp.local
# - discover_shares():  share enumeration on a host through smbclient
# - is_server_own_device(): asks a host's HTTP API whether it runs VFShare
#
# Nothing in here touches persisted state.

from __future__ import annotations
import logging
import random
import socket
import struct
import time
from typing import Dict, List, Optional, Set, Tuple

import requests

from vfsutils import (
    COMMAND_TIMEOUT,
    DISCOVERY_TIMEOUT,
    SERVICE_ID,
    CredentialError,
    NetworkUnreachable,
    VfsError,
    run_command,
)

log = logging.getLogger("vfshare.discover")

# ---------- mDNS constants ----------
MDNS_GROUP = "224.0.0.251"
MDNS_PORT = 5353
SMB_SERVICE_TYPE = "_smb._tcp.local"

T_A = 1
T_PTR = 12
T_TXT = 16
T_SRV = 33
C_IN = 1

# | id(2) | flags(2) | qdcount(2) | ancount(2) | nscount(2) | arcount(2) |
HDR_FMT = "!HHHHHH"
HDR_LEN = struct.calcsize(HDR_FMT)   # == 12
RR_FMT = "!HHIH"                     # type, class, ttl, rdlength
RR_LEN = struct.calcsize(RR_FMT)     # == 10

MAX_POINTER_HOPS = 32
MAX_PACKET = 9000

# ---------- packet building ----------

def _encode_name(name: str) -> bytes:
    out = b""
    for label in name.rstrip(".").split("."):
        raw = label.encode("utf-8")
        if not raw or len(raw) > 63:
            raise ValueError(f"bad DNS label in {name!r}")
        out += struct.pack("!B", len(raw)) + raw
    return out + b"\x00"


def build_query(name: str = SMB_SERVICE_TYPE, qtype: int = T_PTR, msg_id: Optional[int] = None) -> bytes:
    """Standard query with a single question; sent from an ephemeral port
    it is a 'legacy unicast' query and responders answer us directly."""
    msg_id = random.getrandbits(16) if msg_id is None else msg_id
    header = struct.pack(HDR_FMT, msg_id, 0, 1, 0, 0, 0)
    return header + _encode_name(name) + struct.pack("!HH", qtype, C_IN)

# ---------- packet parsing ----------

def _read_name(dat: bytes, offset: int) -> Tuple[str, int]:
    """Decode a possibly compressed name; returns (name, offset after it)."""
    labels: List[str] = []
    end: Optional[int] = None
    hops = 0
    while True:
        if offset >= len(dat):
            raise ValueError("name runs past packet end")
        length = dat[offset]
        if length & 0xC0 == 0xC0:
            if offset + 1 >= len(dat):
                raise ValueError("truncated name pointer")
            hops += 1
            if hops > MAX_POINTER_HOPS:
                raise ValueError("name pointer loop")
            if end is None:
                end = offset + 2
            offset = ((length & 0x3F) << 8) | dat[offset + 1]
            continue
        offset += 1
        if length == 0:
            break
        labels.append(dat[offset:offset + length].decode("utf-8", "replace"))
        offset += length
    return ".".join(labels), (end if end is not None else offset)


def parse_response(dat: bytes) -> List[Dict]:
    """Return every resource record of a DNS message as a small dict.
    PTR and SRV records carry their decoded target under 'target'."""
    if len(dat) < HDR_LEN:
        return []
    _id, flags, qd, an, ns, ar = struct.unpack(HDR_FMT, dat[:HDR_LEN])
    if not flags & 0x8000:
        return []    # a query, not a response
    offset = HDR_LEN
    records: List[Dict] = []
    try:
        for _ in range(qd):
            _name, offset = _read_name(dat, offset)
            offset += 4
        for _ in range(an + ns + ar):
            name, offset = _read_name(dat, offset)
            if offset + RR_LEN > len(dat):
                break
            rtype, _rclass, _ttl, rdlen = struct.unpack(RR_FMT, dat[offset:offset + RR_LEN])
            offset += RR_LEN
            rdata_at = offset
            offset += rdlen
            if offset > len(dat):
                break
            rec = {"name": name, "type": rtype}
            if rtype == T_PTR:
                rec["target"], _ = _read_name(dat, rdata_at)
            elif rtype == T_SRV:
                _prio, _weight, port = struct.unpack("!HHH", dat[rdata_at:rdata_at + 6])
                rec["port"] = port
                rec["target"], _ = _read_name(dat, rdata_at + 6)
            records.append(rec)
    except (ValueError, struct.error) as e:
        log.debug("[discover] dropping malformed packet: %s", e)
    return records


def hosts_from_records(records: List[Dict], service: str = SMB_SERVICE_TYPE) -> Set[str]:
    """Host names offering `service`: SRV targets, else '<instance>.local'."""
    instances = {r["target"] for r in records if r["type"] == T_PTR and r["name"] == service}
    hosts: Set[str] = set()
    resolved: Set[str] = set()
    for r in records:
        if r["type"] == T_SRV and r.get("target"):
            hosts.add(r["target"].rstrip("."))
            resolved.add(r["name"])
    for instance in instances - resolved:
        label = instance[: -len(service) - 1] if instance.endswith("." + service) else instance
        if label:
            hosts.add(f"{label}.local")
    return hosts

# ---------- public probes ----------

def discover_servers(timeout: float = DISCOVERY_TIMEOUT) -> List[str]:
    """Browse the LAN for SMB servers for `timeout` seconds."""
    records: List[Dict] = []
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    except OSError as e:
        raise NetworkUnreachable(f"cannot open discovery socket: {e}")
    try:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 255)
        sock.bind(("0.0.0.0", 0))
        sock.sendto(build_query(), (MDNS_GROUP, MDNS_PORT))
        deadline = time.monotonic() + timeout
        while True:
            left = deadline - time.monotonic()
            if left <= 0:
                break
            sock.settimeout(left)
            try:
                dat, _src = sock.recvfrom(MAX_PACKET)
            except socket.timeout:
                break
            records.extend(parse_response(dat))
    except OSError as e:
        raise NetworkUnreachable(f"discovery failed: {e}")
    finally:
        sock.close()
    hosts = sorted(hosts_from_records(records))
    log.info("[discover] found %d server(s)", len(hosts))
    return hosts


_CREDENTIAL_MARKERS = (
    "NT_STATUS_LOGON_FAILURE",
    "NT_STATUS_ACCESS_DENIED",
    "NT_STATUS_WRONG_PASSWORD",
    "NT_STATUS_ACCOUNT_DISABLED",
    "NT_STATUS_ACCOUNT_LOCKED_OUT",
    "NT_STATUS_PASSWORD_EXPIRED",
)


def discover_shares(host: str, username: str, password: str,
                    run=run_command, timeout: float = COMMAND_TIMEOUT) -> List[str]:
    """
    Disk shares offered by `host`, without the administrative '$' ones.
    Wrong credentials raise CredentialError, anything else on the wire
    NetworkUnreachable.
    """
    cmd = ["smbclient", "-L", f"//{host}", "-g", "-U", username,
           "--option=client min protocol=SMB2"]
    # smbclient reads the password from PASSWD, keeping it out of argv
    res = run(cmd, timeout=timeout, env={"PASSWD": password})
    out = res.output
    if any(marker in out for marker in _CREDENTIAL_MARKERS):
        raise CredentialError()
    if res.returncode == 127:
        raise VfsError("smbclient is not installed")
    shares: List[str] = []
    for line in res.stdout.splitlines():
        parts = line.split("|")
        if len(parts) >= 2 and parts[0] == "Disk" and not parts[1].endswith("$"):
            shares.append(parts[1])
    if not res.ok and not shares:
        raise NetworkUnreachable(f"cannot list shares on {host}: {out.strip()[:200]}")
    return shares


def is_server_own_device(address: str, timeout: float = DISCOVERY_TIMEOUT) -> bool:
    """True if http://<address>/healthz answers as another VFShare instance."""
    try:
        r = requests.get(f"http://{address}/healthz", timeout=timeout)
        if not r.ok:
            return False
        data = r.json() or {}
    except (requests.RequestException, ValueError):
        return False
    return isinstance(data, dict) and data.get("service") == SERVICE_ID
