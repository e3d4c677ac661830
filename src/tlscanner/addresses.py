from typing import Iterator, Optional, Tuple, Union
import ipaddress
import logging
import re

logger = logging.getLogger(__name__)

IPV4_MAX: int = 2**32 - 1
IPV6_MAX: int = 2**128 - 1

# Only IPv4 blocks are expanded, e.g. "10.0.0.0/24".
CIDR_PATTERN = re.compile(r'^(\d+\.\d+\.\d+\.\d+)/(\d{1,2})$')

def ip_version(literal: str) -> int:
    """
    Returns 4 or 6 for a valid IP literal, 0 for anything else.
    """
    try:
        return ipaddress.ip_address(literal).version
    except ValueError:
        return 0

def expand_ipv6(literal: str) -> str:
    """
    Expands an IPv6 literal to its full form of 8 zero-padded groups,
    e.g. '2001:db8::1' -> '2001:0db8:0000:0000:0000:0000:0000:0001'.
    Raises ValueError for malformed input.
    """
    return ipaddress.IPv6Address(literal).exploded

def compress_ipv6(value: Union[str, int]) -> str:
    """
    Serializes an IPv6 address (literal or 128-bit integer) replacing the longest
    run of zero groups with '::'. On ties the first run wins, and single zero groups
    are left alone.
    """
    if isinstance(value, str):
        value = int(ipaddress.IPv6Address(value))
    groups = [(value >> shift) & 0xffff for shift in range(112, -16, -16)]

    best_start, best_length = -1, 0
    run_start, run_length = -1, 0
    for i, group in enumerate(groups):
        if group == 0:
            if run_length == 0:
                run_start = i
            run_length += 1
            if run_length > best_length:
                best_start, best_length = run_start, run_length
        else:
            run_length = 0

    hextets = [f'{group:x}' for group in groups]
    if best_length < 2:
        return ':'.join(hextets)
    before = ':'.join(hextets[:best_start])
    after = ':'.join(hextets[best_start + best_length:])
    return f'{before}::{after}'

def step(address: str, direction: int, enable_ipv6: bool = True) -> Optional[str]:
    """
    Returns the address immediately above (direction=+1) or below (direction=-1) the given one,
    or None if that would leave the address space. Addresses never wrap around.
    Malformed input also returns None.
    """
    if direction not in (1, -1):
        raise ValueError(f'Direction must be +1 or -1, got {direction!r}')
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError:
        logger.debug(f'Cannot step malformed address {address!r}')
        return None

    value = int(parsed) + direction
    if parsed.version == 4:
        if not 0 <= value <= IPV4_MAX:
            return None
        return str(ipaddress.IPv4Address(value))
    if not enable_ipv6 or not 0 <= value <= IPV6_MAX:
        return None
    return compress_ipv6(value)

def parse_cidr(text: str) -> Optional[Tuple[str, int]]:
    """
    Splits an IPv4 'base/mask' string into its parts. Returns None if the text does not
    look like a CIDR block at all. The mask is returned as-is, even if out of range.
    """
    match = CIDR_PATTERN.match(text)
    if not match:
        return None
    return match.group(1), int(match.group(2))

def expand_cidr(base: str, mask: int) -> Iterator[str]:
    """
    Lazily yields the 2**(32-mask) addresses of an IPv4 block in ascending order,
    starting at `base`. Stops early at 255.255.255.255 if the base is not aligned.
    """
    if not 0 <= mask <= 32:
        raise ValueError(f'CIDR mask out of range: {mask}')
    start = int(ipaddress.IPv4Address(base))
    end = min(start + 2**(32 - mask) - 1, IPV4_MAX)
    for value in range(start, end + 1):
        yield str(ipaddress.IPv4Address(value))
