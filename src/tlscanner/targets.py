from typing import AsyncIterator, Iterable, Optional, Union
from enum import Enum
import dataclasses
import asyncio
import logging
import socket
import re

from .addresses import ip_version, step, parse_cidr, expand_cidr

logger = logging.getLogger(__name__)

DOMAIN_PATTERN = re.compile(r'^[A-Za-z0-9\-.]+$')

class ScanError(Exception):
    """ Base error class for errors that occur during scanning. """
    pass

class InputError(ScanError):
    """ Error for target sources that cannot be read or understood. """
    pass

class TargetKind(Enum):
    IP = 'ip'
    CIDR_MEMBER = 'cidr'
    DOMAIN = 'domain'

@dataclasses.dataclass
class Target:
    """
    One endpoint to probe. `origin` is the literal the user gave us (an IP, the CIDR block
    this address came from, or a domain) and is kept for reporting. Domain targets start
    with `address=None` and are resolved right before the handshake.
    """
    address: Optional[str]
    origin: str
    kind: TargetKind = TargetKind.IP

    @property
    def server_name(self) -> Optional[str]:
        """ Value for the SNI extension, only sent when the user asked for a domain. """
        return self.origin if self.kind == TargetKind.DOMAIN else None

def validate_domain_name(domain: str) -> bool:
    """
    Loose syntax check: letters, digits, hyphens and dots only. Does not check TLDs or label lengths.
    """
    return bool(DOMAIN_PATTERN.match(domain))

async def resolve(hostname: str, enable_ipv6: bool = False) -> Optional[str]:
    """
    Resolves a host name to a single IP address, or None if the lookup fails.
    Only IPv4 addresses are returned unless `enable_ipv6` is set.
    """
    family = socket.AF_UNSPEC if enable_ipv6 else socket.AF_INET
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, family=family, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError, OSError) as e:
        logger.debug(f'Failed to resolve {hostname}: {e!r}')
        return None
    for _, _, _, _, sockaddr in infos:
        return str(sockaddr[0])
    logger.debug(f'No addresses found for {hostname}')
    return None

async def iterate_cidr(cidr: str) -> AsyncIterator[Target]:
    """
    Yields every member of an IPv4 CIDR block in ascending order. Malformed blocks yield nothing.
    """
    parsed = parse_cidr(cidr)
    if parsed is None:
        logger.warning(f'Not a valid CIDR block: {cidr}')
        return
    base, mask = parsed
    if not 0 <= mask <= 32:
        logger.warning(f'CIDR mask out of range, skipping: {cidr}')
        return
    if ip_version(base) != 4:
        logger.warning(f'CIDR base is not a valid IPv4 address, skipping: {cidr}')
        return
    for address in expand_cidr(base, mask):
        yield Target(address=address, origin=cidr, kind=TargetKind.CIDR_MEMBER)

async def walk(seed: str, enable_ipv6: bool = False) -> AsyncIterator[Target]:
    """
    Infinite walk around a seed address: seed, seed-1, seed+1, seed-2, seed+2, ...
    A side that reaches the edge of the address space is dropped and the walk continues
    on the other side. Ends only when both sides are exhausted.
    """
    low = high = seed
    # Alternation order: down first, then up.
    directions = [-1, 1]
    while directions:
        for direction in list(directions):
            current = low if direction < 0 else high
            following = step(current, direction, enable_ipv6)
            if following is None:
                side = 'below' if direction < 0 else 'above'
                logger.info(f'Reached the end of the address space {side} {current}')
                directions.remove(direction)
                continue
            if direction < 0:
                low = following
            else:
                high = following
            yield Target(address=following, origin=following, kind=TargetKind.IP)

async def iterate_address(address: str, enable_ipv6: bool = False) -> AsyncIterator[Target]:
    """
    Targets for a single address given by the user:
    - a CIDR block expands to its members (finite);
    - an IP literal starts an infinite walk around it;
    - a domain is resolved once and the walk starts from its address.
    """
    address = address.strip()
    if parse_cidr(address) is not None:
        async for target in iterate_cidr(address):
            yield target
        return

    version = ip_version(address)
    if version == 6 and not enable_ipv6:
        logger.warning(f'Skipping IPv6 address {address}, IPv6 scanning is not enabled')
        return
    if version:
        seed = address
    else:
        resolved = await resolve(address, enable_ipv6)
        if resolved is None:
            logger.error(f'Not a valid IP, CIDR, or resolvable domain: {address}')
            return
        seed = resolved

    yield Target(address=seed, origin=address, kind=TargetKind.IP)
    logger.info(f'Enabled infinite mode around {seed}')
    async for target in walk(seed, enable_ipv6):
        yield target

async def iterate_lines(lines: Iterable[str], enable_ipv6: bool = False) -> AsyncIterator[Target]:
    """
    Targets from newline-delimited text: IPs, IPv4 CIDR blocks and domains, one per line.
    Blank lines are skipped, anything else unrecognized is skipped with a warning.
    """
    for line in lines:
        entry = line.strip()
        if not entry:
            continue

        version = ip_version(entry)
        if version == 4 or (version == 6 and enable_ipv6):
            yield Target(address=entry, origin=entry, kind=TargetKind.IP)
            continue
        if version == 6:
            logger.debug(f'Skipping IPv6 address, IPv6 is disabled: {entry}')
            continue

        if parse_cidr(entry) is not None:
            async for target in iterate_cidr(entry):
                yield target
            continue

        if validate_domain_name(entry):
            yield Target(address=None, origin=entry, kind=TargetKind.DOMAIN)
            continue

        logger.warning(f'Not a valid IP, CIDR, or domain: {entry}')

def enumerate_targets(source: Union[str, Iterable[str]], enable_ipv6: bool = False) -> AsyncIterator[Target]:
    """
    Lazy sequence of targets for a source. A string is a single address (IP, CIDR or domain),
    anything else is treated as an iterable of lines. Each call starts a fresh sequence.
    """
    if isinstance(source, str):
        return iterate_address(source, enable_ipv6)
    return iterate_lines(source, enable_ipv6)
