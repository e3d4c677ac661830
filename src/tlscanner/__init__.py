from .addresses import step, expand_ipv6, compress_ipv6, expand_cidr, parse_cidr, ip_version
from .targets import Target, TargetKind, ScanError, InputError, enumerate_targets, iterate_address, iterate_cidr, iterate_lines, walk, resolve, validate_domain_name
from .prober import ProbeResult, ResolutionError, ConnectionError, HandshakeError, CertificateError, probe, probe_batch, is_feasible, format_record, generate_csv, parse_certificate, CSV_HEADER, DEFAULT_PORT, DEFAULT_TIMEOUT
from .geo import GeoLookup
from .crawl import fetch_domains, extract_domains
from .scan import Scanner, ScanSettings, ScanSession, ScanSummary, TargetCursor, OutputWriter, run, load_source, DEFAULT_THREAD_COUNT
