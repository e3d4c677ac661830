from typing import AsyncIterator, Iterable, List, Optional, Sequence, Tuple
import contextlib
import dataclasses
import functools
import asyncio
import logging
import ssl

from OpenSSL import crypto

from .targets import ScanError, Target, resolve
from .geo import GeoLookup, UNKNOWN_COUNTRY

logger = logging.getLogger(__name__)

# Default HTTPS port to probe.
DEFAULT_PORT: int = 443
# Default timeout for each of connect and handshake, in seconds.
DEFAULT_TIMEOUT: float = 10
# Default number of probes in flight per batch.
DEFAULT_BATCH_SIZE: int = 10
# Pause between two batches, in seconds.
DEFAULT_BATCH_PAUSE: float = 0.1

# Offered in this preference order.
ALPN_PROTOCOLS = ['h2', 'http/1.1']
FEASIBLE_PROTOCOL = 'TLSv1.3'
FEASIBLE_ALPN = 'h2'

CSV_HEADER = 'IP,ORIGIN,CERT_DOMAIN,CERT_ISSUER,GEO_CODE'

class ResolutionError(ScanError):
    """ Error for domain targets that could not be resolved. """
    pass

class ConnectionError(ScanError):
    """ Class for errors and timeouts while opening the TCP connection. """
    pass

class HandshakeError(ScanError):
    """ Class for errors and timeouts during the TLS handshake. """
    pass

class CertificateError(ScanError):
    """ Error for servers without a usable certificate. """
    pass

@dataclasses.dataclass(frozen=True)
class ProbeResult:
    address: str
    origin: str
    certificate_domain: str
    certificate_issuer: str
    country_code: str
    negotiated_protocol: str
    negotiated_alpn: str
    feasible: bool

def is_feasible(protocol: str, alpn: str, certificate_domain: str, certificate_issuer: str) -> bool:
    """
    A target is feasible when it speaks TLS 1.3 with HTTP/2 and presents a certificate
    with both a common name and an issuer organization.
    """
    return (
        protocol == FEASIBLE_PROTOCOL
        and alpn == FEASIBLE_ALPN
        and certificate_domain != ''
        and certificate_issuer != ''
    )

def format_record(result: ProbeResult) -> str:
    """ One CSV line for the output file, without the trailing newline. """
    return ','.join([
        result.address,
        result.origin,
        result.certificate_domain,
        f'"{result.certificate_issuer}"',
        result.country_code,
    ])

def generate_csv(results: Iterable[ProbeResult]) -> str:
    """ Header plus one line per feasible result. """
    lines = [CSV_HEADER] + [format_record(result) for result in results if result.feasible]
    return '\n'.join(lines) + '\n'

@functools.lru_cache(maxsize=None)
def make_ssl_context() -> ssl.SSLContext:
    """
    Client context that accepts any certificate, since we only inspect what the server presents.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    context.set_alpn_protocols(ALPN_PROTOCOLS)
    return context

def _name_values(components: Sequence[Tuple[bytes, bytes]], field: bytes) -> List[str]:
    return [value.decode('utf-8', errors='replace') for name, value in components if name == field]

def parse_certificate(der: bytes) -> Tuple[str, str]:
    """
    Extracts (common name, issuer organization) from a DER certificate using pyOpenSSL.
    Multiple issuer organizations are joined with ' | '. Missing fields become empty strings.
    """
    try:
        certificate = crypto.load_certificate(crypto.FILETYPE_ASN1, der)
    except crypto.Error as e:
        raise CertificateError('Could not parse the server certificate') from e

    subject = certificate.get_subject().get_components()
    if not subject:
        raise CertificateError('Server certificate has no subject')

    common_names = _name_values(subject, b'CN')
    organizations = _name_values(certificate.get_issuer().get_components(), b'O')
    return (common_names[0] if common_names else ''), ' | '.join(organizations)

async def _close(writer: asyncio.StreamWriter, timeout: float, established: bool) -> None:
    writer.close()
    if not established:
        # A failed start_tls already closed the transport and never resolves wait_closed().
        return
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout)
    except OSError as e:
        # Includes SSL errors and timeouts from servers that don't shut down cleanly.
        logger.debug(f'Error while closing connection: {e!r}')
        writer.transport.abort()

@contextlib.asynccontextmanager
async def open_tls_stream(address: str, port: int, server_name: Optional[str], timeout: float) -> AsyncIterator[ssl.SSLObject]:
    """
    Opens a TCP connection and upgrades it to TLS, yielding the SSL object of the session.
    The connection is closed on every exit path.
    """
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(address, port), timeout)
    except TimeoutError as e:
        raise ConnectionError(f'Connection to {address}:{port} timed out after {timeout} seconds') from e
    except OSError as e:
        raise ConnectionError(f'Could not connect to {address}:{port}: {e}') from e

    established = False
    try:
        try:
            await asyncio.wait_for(
                writer.start_tls(make_ssl_context(), server_hostname=server_name, ssl_handshake_timeout=timeout),
                timeout,
            )
        except TimeoutError as e:
            raise HandshakeError(f'TLS handshake with {address}:{port} timed out after {timeout} seconds') from e
        except OSError as e:
            raise HandshakeError(f'TLS handshake with {address}:{port} failed: {e}') from e
        established = True

        ssl_object = writer.get_extra_info('ssl_object')
        if ssl_object is None:
            raise HandshakeError(f'No TLS session established with {address}:{port}')
        yield ssl_object
    finally:
        await _close(writer, timeout, established)

async def _probe(target: Target, port: int, timeout: float, geo: Optional[GeoLookup], enable_ipv6: bool) -> ProbeResult:
    if target.address is None:
        address = await resolve(target.origin, enable_ipv6)
        if address is None:
            raise ResolutionError(f'Failed to get IP from the origin {target.origin}')
        target.address = address

    async with open_tls_stream(target.address, port, target.server_name, timeout) as ssl_object:
        protocol = ssl_object.version() or ''
        alpn = ssl_object.selected_alpn_protocol() or ''
        der = ssl_object.getpeercert(binary_form=True)

    if not der:
        raise CertificateError(f'No certificate received from {target.address}:{port}')
    domain, issuer = parse_certificate(der)
    country_code = geo.country(target.address) if geo is not None else UNKNOWN_COUNTRY

    result = ProbeResult(
        address=target.address,
        origin=target.origin,
        certificate_domain=domain,
        certificate_issuer=issuer,
        country_code=country_code,
        negotiated_protocol=protocol,
        negotiated_alpn=alpn,
        feasible=is_feasible(protocol, alpn, domain, issuer),
    )
    log = logger.info if result.feasible else logger.debug
    log(f'Connected to target: IP={result.address}, Origin={result.origin}, TLS={protocol}, ALPN={alpn}, '
        f'CertDomain={domain}, CertIssuer={issuer}, Geo={country_code}')
    return result

async def probe(
    target: Target,
    port: int = DEFAULT_PORT,
    timeout: float = DEFAULT_TIMEOUT,
    geo: Optional[GeoLookup] = None,
    enable_ipv6: bool = False,
    ) -> Optional[ProbeResult]:
    """
    Connects to the target and checks its TLS capabilities.

    Returns None when the target can't be resolved, reached, or completes no handshake with
    a certificate. Those failures are only logged at debug level so a single bad target never
    interrupts a scan.
    """
    try:
        return await _probe(target, port, timeout, geo, enable_ipv6)
    except ScanError as e:
        logger.debug(f'TLS probe failed: target={target.address or target.origin}:{port}, error={e}')
        return None

async def probe_batch(
    targets: Sequence[Target],
    concurrency: int = DEFAULT_BATCH_SIZE,
    port: int = DEFAULT_PORT,
    timeout: float = DEFAULT_TIMEOUT,
    geo: Optional[GeoLookup] = None,
    pause: float = DEFAULT_BATCH_PAUSE,
    enable_ipv6: bool = False,
    ) -> List[ProbeResult]:
    """
    Probes a finite list of targets in chunks of `concurrency`, each chunk in parallel.
    A failing probe never cancels the others in its chunk.
    """
    results: List[ProbeResult] = []
    for start in range(0, len(targets), concurrency):
        chunk = targets[start:start + concurrency]
        outcomes = await asyncio.gather(*(probe(target, port, timeout, geo, enable_ipv6) for target in chunk), return_exceptions=True)
        for target, outcome in zip(chunk, outcomes):
            if isinstance(outcome, BaseException):
                logger.debug(f'Batch scan error: host={target.origin}, error={outcome!r}')
            elif outcome is not None:
                results.append(outcome)
        if start + concurrency < len(targets):
            await asyncio.sleep(pause)
    return results
