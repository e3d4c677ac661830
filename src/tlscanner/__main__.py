from .scan import ScanSettings, run, DEFAULT_THREAD_COUNT, DEFAULT_OUTPUT_PATH
from .prober import DEFAULT_PORT, DEFAULT_TIMEOUT
from .targets import ScanError

import sys
import asyncio
import logging
import argparse

def log_level(verbose: int, quiet: bool = False) -> int:
    """ INFO by default so progress is shown. `-q` drops to WARNING, each `-v` goes one step further down. """
    levels = [logging.WARNING, logging.INFO, logging.DEBUG]
    return levels[max(0, min(2, 1 + verbose - quiet))]

def main() -> None:
    parser = argparse.ArgumentParser(prog="tlscanner", description="Find TLS 1.3 + HTTP/2 endpoints", formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    parser.add_argument("--addr", "-a", dest="address", default=None, help="IP, IPv4 CIDR or domain to scan; a single IP or domain scans outwards from it until interrupted")
    parser.add_argument("--in", "-i", dest="input_file", default=None, help="file with IPs, IPv4 CIDRs or domains to scan, one per line")
    parser.add_argument("--url", "-u", default=None, help="crawl the domain list from a URL, e.g. https://launchpad.net/ubuntu/+archivemirrors")
    parser.add_argument("--port", "-p", type=int, default=DEFAULT_PORT, help="HTTPS port to check")
    parser.add_argument("--thread", "-t", dest="thread_count", type=int, default=DEFAULT_THREAD_COUNT, help="number of concurrent scanning tasks")
    parser.add_argument("--timeout", "-T", type=float, default=DEFAULT_TIMEOUT, help="timeout in seconds for connecting and for the handshake")
    parser.add_argument("--out", "-o", dest="output_path", default=DEFAULT_OUTPUT_PATH, help="CSV file to store feasible results in")
    parser.add_argument("--ipv6", "-6", dest="enable_ipv6", default=False, action="store_true", help="enable IPv6 in addition to IPv4")
    parser.add_argument("--geoip-db", default=None, help="path to a MaxMind country database, defaults to searching Country.mmdb in the usual places")
    parser.add_argument("--verbose", "-v", action="count", default=0, help="increase output verbosity")
    parser.add_argument("--quiet", "-q", default=False, action="store_true", help="only log warnings and errors")
    args = parser.parse_args()

    logging.basicConfig(
        datefmt='%Y-%m-%d %H:%M:%S',
        format='{asctime}.{msecs:0<3.0f} {module} {levelname}: {message}',
        style='{',
        level=log_level(args.verbose, args.quiet)
    )

    try:
        settings = ScanSettings(
            address=args.address,
            input_file=args.input_file,
            url=args.url,
            thread_count=args.thread_count,
            port=args.port,
            timeout_in_seconds=args.timeout,
            enable_ipv6=args.enable_ipv6,
            output_path=args.output_path,
            geoip_database=args.geoip_db,
        )
    except ValueError as e:
        parser.error(str(e))

    try:
        asyncio.run(run(settings))
    except ScanError as e:
        print(f'Scan error: {e.args[0]}', file=sys.stderr)
        if args.verbose > 0:
            raise
        else:
            exit(1)

if __name__ == '__main__':
    main()
