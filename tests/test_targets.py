import asyncio
import logging
import pytest
from tlscanner import *
from tlscanner import targets

def collect(sequence, limit=None):
    async def run():
        items = []
        async for item in sequence:
            items.append(item)
            if limit is not None and len(items) >= limit:
                break
        return items
    return asyncio.run(run())

def test_line_source_mixed(caplog):
    lines = ['10.0.0.1', '192.168.1.0/30', '192.168.2.0/33', 'example.com', 'not a domain!']
    with caplog.at_level(logging.WARNING, logger='tlscanner'):
        result = collect(iterate_lines(lines))
    assert len(result) == 6
    assert result[0] == Target('10.0.0.1', '10.0.0.1', TargetKind.IP)
    assert [t.address for t in result[1:5]] == ['192.168.1.0', '192.168.1.1', '192.168.1.2', '192.168.1.3']
    assert all(t.kind == TargetKind.CIDR_MEMBER and t.origin == '192.168.1.0/30' for t in result[1:5])
    assert result[5] == Target(None, 'example.com', TargetKind.DOMAIN)

    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 2
    assert any('192.168.2.0/33' in w for w in warnings)
    assert any('not a domain!' in w for w in warnings)

def test_line_source_skips_blank_lines(caplog):
    with caplog.at_level(logging.WARNING, logger='tlscanner'):
        result = collect(iterate_lines(['', '   ', '\t', ' 10.0.0.1 \n']))
    assert result == [Target('10.0.0.1', '10.0.0.1', TargetKind.IP)]
    assert not caplog.records

def test_line_source_ipv6():
    assert collect(iterate_lines(['2001:db8::1'])) == []
    assert collect(iterate_lines(['2001:db8::1'], enable_ipv6=True)) == [Target('2001:db8::1', '2001:db8::1', TargetKind.IP)]

def test_line_source_invalid_cidr_base():
    assert collect(iterate_lines(['300.0.0.0/30'])) == []

def test_cidr_expansion():
    result = collect(iterate_cidr('10.0.0.0/29'))
    assert [t.address for t in result] == [f'10.0.0.{i}' for i in range(8)]
    assert {t.origin for t in result} == {'10.0.0.0/29'}

def test_walk_order():
    result = collect(iterate_address('10.0.0.5'), limit=7)
    assert [t.address for t in result] == ['10.0.0.5', '10.0.0.4', '10.0.0.6', '10.0.0.3', '10.0.0.7', '10.0.0.2', '10.0.0.8']
    assert all(t.kind == TargetKind.IP and t.origin == t.address for t in result)

def test_walk_never_repeats_or_skips():
    result = collect(iterate_address('10.0.0.128'), limit=201)
    addresses = [t.address for t in result]
    assert len(set(addresses)) == len(addresses)
    lows = [int(a.split('.')[-1]) for a in addresses[1::2]]
    highs = [int(a.split('.')[-1]) for a in addresses[2::2]]
    assert lows == list(range(127, 27, -1))
    assert highs == list(range(129, 229))

def test_walk_prunes_exhausted_side():
    result = collect(iterate_address('0.0.0.1'), limit=5)
    assert [t.address for t in result] == ['0.0.0.1', '0.0.0.0', '0.0.0.2', '0.0.0.3', '0.0.0.4']

def test_walk_ends_when_both_sides_exhausted(monkeypatch):
    # Shrink the address space to 10.0.0.0 - 10.0.0.3.
    def bounded_step(address, direction, enable_ipv6):
        last = int(address.split('.')[-1]) + direction
        return f'10.0.0.{last}' if 0 <= last <= 3 else None
    monkeypatch.setattr(targets, 'step', bounded_step)
    result = collect(iterate_address('10.0.0.1'))
    assert [t.address for t in result] == ['10.0.0.1', '10.0.0.0', '10.0.0.2', '10.0.0.3']

def test_walk_ipv6_seed_requires_ipv6(caplog):
    with caplog.at_level(logging.WARNING, logger='tlscanner'):
        assert collect(iterate_address('2001:db8::5')) == []
    assert 'IPv6 scanning is not enabled' in caplog.text
    result = collect(iterate_address('2001:db8::5', enable_ipv6=True), limit=3)
    assert [t.address for t in result] == ['2001:db8::5', '2001:db8::4', '2001:db8::6']

def test_walk_from_domain(monkeypatch):
    async def resolve(hostname, enable_ipv6=False):
        assert hostname == 'example.com'
        return '10.0.0.5'
    monkeypatch.setattr(targets, 'resolve', resolve)
    result = collect(iterate_address('example.com'), limit=3)
    assert result[0] == Target('10.0.0.5', 'example.com', TargetKind.IP)
    assert [t.address for t in result[1:]] == ['10.0.0.4', '10.0.0.6']

def test_walk_from_unresolvable_domain(monkeypatch, caplog):
    async def resolve(hostname, enable_ipv6=False):
        return None
    monkeypatch.setattr(targets, 'resolve', resolve)
    with caplog.at_level(logging.ERROR, logger='tlscanner'):
        assert collect(iterate_address('does-not-exist.example')) == []
    assert caplog.records

def test_address_cidr_is_finite():
    result = collect(iterate_address('10.0.0.0/31'))
    assert result == [
        Target('10.0.0.0', '10.0.0.0/31', TargetKind.CIDR_MEMBER),
        Target('10.0.0.1', '10.0.0.0/31', TargetKind.CIDR_MEMBER),
    ]
    assert collect(iterate_address('10.0.0.0/33')) == []

def test_enumerate_targets_dispatch():
    assert len(collect(enumerate_targets('10.0.0.0/30'))) == 4
    assert len(collect(enumerate_targets(['10.0.0.1', 'example.com']))) == 2
    assert collect(enumerate_targets('10.0.0.1'), limit=3)[2].address == '10.0.0.2'

def test_enumerate_targets_restarts():
    lines = ['10.0.0.1', '10.0.0.2']
    assert collect(enumerate_targets(lines)) == collect(enumerate_targets(lines))

def test_server_name_only_for_domains():
    assert Target(None, 'example.com', TargetKind.DOMAIN).server_name == 'example.com'
    assert Target('10.0.0.1', '10.0.0.1', TargetKind.IP).server_name is None
    assert Target('10.0.0.1', '10.0.0.0/30', TargetKind.CIDR_MEMBER).server_name is None

def test_validate_domain_name():
    assert validate_domain_name('example.com')
    assert validate_domain_name('my-host.example.co.uk')
    assert not validate_domain_name('bad_domain.com')
    assert not validate_domain_name('example.com:8443')
    assert not validate_domain_name('')

def test_resolve_ip_literal():
    assert asyncio.run(resolve('127.0.0.1')) == '127.0.0.1'
