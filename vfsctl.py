#!/usr/bin/env python3
"""
vfsctl.py - control tool for a running VFShare daemon

Usage examples:
  python3 vfsctl.py status
  python3 vfsctl.py shares list
  python3 vfsctl.py shares add /Home/Documents
  python3 vfsctl.py shares remove /Home/Documents
  python3 vfsctl.py shares password
  python3 vfsctl.py network servers
  python3 vfsctl.py network shares nas.local --user alice --password ...
  python3 vfsctl.py network add nas.local Media --user alice --password ...
  python3 vfsctl.py network remove "/Network/nas.local/Media"
  python3 vfsctl.py favorites add /Home/Photos
"""

import argparse
import getpass
import json
import os
import sys

import requests

DEFAULT_URL = os.environ.get("VFSHARE_URL", "http://127.0.0.1:" + os.environ.get("VFSHARE_PORT", "8790"))
TIMEOUT = 60


class ApiError(Exception):
    pass


class Client:
    def __init__(self, url=DEFAULT_URL, token=None):
        self.url = url.rstrip("/")
        self.session = requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _unwrap(self, r):
        try:
            data = r.json()
        except ValueError:
            r.raise_for_status()
            raise ApiError(f"unexpected answer from {r.url}")
        if not r.ok:
            raise ApiError(data.get("error") or f"HTTP {r.status_code}")
        return data.get("result")

    def query(self, procedure, **params):
        return self._unwrap(self.session.get(f"{self.url}/api/{procedure}", params=params, timeout=TIMEOUT))

    def mutate(self, procedure, **body):
        return self._unwrap(self.session.post(f"{self.url}/api/{procedure}", json=body, timeout=TIMEOUT))

    def health(self):
        r = self.session.get(f"{self.url}/healthz", timeout=5)
        r.raise_for_status()
        return r.json()

# --------------------- output -------------------------

def _print(result):
    if isinstance(result, list):
        for item in result:
            print(json.dumps(item, ensure_ascii=False) if isinstance(item, dict) else item)
    elif isinstance(result, (dict, bool)):
        print(json.dumps(result, ensure_ascii=False))
    else:
        print(result)


def _password(args):
    return args.password if args.password is not None else getpass.getpass("Share password: ")

# --------------------- commands -------------------------

def cmd_status(client, args):
    data = client.health()
    print(f"{data.get('name')} on {data.get('hostname')}")
    print(f"  shares:    {len(client.query('shares.list'))}")
    mounts = client.query("network.list")
    up = sum(1 for m in mounts if m.get("isMounted"))
    print(f"  network:   {up}/{len(mounts)} mounted")
    print(f"  favorites: {len(client.query('favorites.list'))}")


def cmd_shares(client, args):
    if args.action == "list":
        _print(client.query("shares.list"))
    elif args.action == "add":
        _print(client.mutate("shares.add", path=args.path))
    elif args.action == "remove":
        _print(client.mutate("shares.remove", path=args.path))
    elif args.action == "password":
        _print(client.query("shares.password"))


def cmd_network(client, args):
    if args.action == "list":
        _print(client.query("network.list"))
    elif args.action == "servers":
        _print(client.query("network.discoverServers"))
    elif args.action == "shares":
        _print(client.mutate("network.discoverShares", host=args.host,
                             username=args.user, password=_password(args)))
    elif args.action == "add":
        _print(client.mutate("network.add", host=args.host, share=args.share,
                             username=args.user, password=_password(args)))
    elif args.action == "remove":
        _print(client.mutate("network.remove", mountPath=args.mount_path))
    elif args.action == "probe":
        _print(client.query("network.isServerOwnDevice", address=args.address))


def cmd_favorites(client, args):
    if args.action == "list":
        _print(client.query("favorites.list"))
    elif args.action == "add":
        _print(client.mutate("favorites.add", path=args.path))
    elif args.action == "remove":
        _print(client.mutate("favorites.remove", path=args.path))

# --------------------- main -------------------------

def build_parser():
    ap = argparse.ArgumentParser(prog="vfsctl")
    ap.add_argument("--url", default=DEFAULT_URL)
    ap.add_argument("--token", default=os.environ.get("VFSHARE_TOKEN"))
    sub = ap.add_subparsers(dest="cmd", required=True)

    ss = sub.add_parser("status", help="daemon health and counts")
    ss.set_defaults(func=cmd_status)

    sh = sub.add_parser("shares", help="local SMB shares")
    shs = sh.add_subparsers(dest="action", required=True)
    shs.add_parser("list")
    for action in ("add", "remove"):
        p = shs.add_parser(action)
        p.add_argument("path")
    shs.add_parser("password")
    sh.set_defaults(func=cmd_shares)

    nw = sub.add_parser("network", help="mounted network shares")
    nws = nw.add_subparsers(dest="action", required=True)
    nws.add_parser("list")
    nws.add_parser("servers")
    p = nws.add_parser("shares")
    p.add_argument("host")
    p.add_argument("--user", required=True)
    p.add_argument("--password")
    p = nws.add_parser("add")
    p.add_argument("host")
    p.add_argument("share")
    p.add_argument("--user", required=True)
    p.add_argument("--password")
    p = nws.add_parser("remove")
    p.add_argument("mount_path")
    p = nws.add_parser("probe")
    p.add_argument("address")
    nw.set_defaults(func=cmd_network)

    fv = sub.add_parser("favorites", help="favorite directories")
    fvs = fv.add_subparsers(dest="action", required=True)
    fvs.add_parser("list")
    for action in ("add", "remove"):
        p = fvs.add_parser(action)
        p.add_argument("path")
    fv.set_defaults(func=cmd_favorites)
    return ap


def main(argv=None):
    args = build_parser().parse_args(argv)
    client = Client(args.url, token=args.token)
    try:
        args.func(client, args)
    except ApiError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except requests.RequestException as e:
        print(f"cannot reach {args.url}: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
