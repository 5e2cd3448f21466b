#!/usr/bin/env python
# See LICENSE for licensing information

# Test control port addresses, and connecting and listening using a fake
# reactor

import logging

from twisted.internet.address import IPv4Address
from twisted.internet.error import ConnectionRefusedError
from twisted.internet.protocol import ServerFactory
from twisted.internet.testing import MemoryReactor, StringTransport
from twisted.python.failure import Failure

from onionctl.connection import (connect, listen, stopListening,
                                 parse_control_address,
                                 validate_connection_config, transport_info)
from onionctl.errors import ControlConnectionError
from onionctl.protocol import (TorControlClientProtocol,
                               TorControlClientFactory, connect_control_port,
                               connect_control_config)

from control_helpers import success_of, failure_of

logging.basicConfig(level=logging.INFO)
logging.root.name = ''

def test_parse_control_address():
    assert parse_control_address('tcp', '127.0.0.1:9051') == \
        { 'ip' : '127.0.0.1', 'port' : 9051 }
    assert parse_control_address('tcp6', '[::1]:9151') == \
        { 'ip' : '::1', 'port' : 9151 }
    assert parse_control_address('tcp', '9051') == { 'port' : 9051 }
    assert parse_control_address('tcp', ':9051') == { 'port' : 9051 }
    assert parse_control_address('unix', '/var/run/tor/control') == \
        { 'unix' : '/var/run/tor/control' }
    for network, address in [('udp', '127.0.0.1:9051'),
                             ('tcp', '127.0.0.1:control'),
                             ('tcp', '')]:
        try:
            parse_control_address(network, address)
        except ValueError:
            pass
        else:
            assert False, "parsed {} {}".format(network, address)

def test_validate_connection_config():
    assert validate_connection_config({ 'port' : 9051 })
    assert validate_connection_config({ 'port' : '9051', 'ip' : '::1' })
    assert validate_connection_config({ 'unix' : '/var/run/tor/control' })
    assert not validate_connection_config(None)
    assert not validate_connection_config({})
    assert not validate_connection_config({ 'port' : 0 })
    assert not validate_connection_config({ 'port' : 65536 })
    assert not validate_connection_config({ 'port' : 'control' })
    assert not validate_connection_config({ 'port' : 9051, 'ip' : 'localhost' })
    assert not validate_connection_config({ 'ip' : '127.0.0.1' })
    assert not validate_connection_config({ 'unix' : '' })
    assert not validate_connection_config({ 'port' : 9051 }, must_have_ip=True)
    assert validate_connection_config({ 'port' : 9051, 'ip' : 'localhost' },
                                      allow_hostname=True)
    assert validate_connection_config({ 'port' : 9051, 'ip' : '::1' },
                                      allow_hostname=True)
    for host in ['', 'bad host', '-tor.example', 'tor..example', 'a' * 64]:
        assert not validate_connection_config({ 'port' : 9051, 'ip' : host },
                                              allow_hostname=True)

def test_connect_tcp():
    reactor = MemoryReactor()
    factory = TorControlClientFactory()
    assert connect(factory, { 'port' : 9051 }, reactor=reactor) is not None
    host, port, connect_factory, _, _ = reactor.tcpClients[0]
    assert (host, port) == ('127.0.0.1', 9051)
    assert connect_factory is factory

def test_connect_hostname():
    reactor = MemoryReactor()
    assert connect(TorControlClientFactory(),
                   { 'port' : 9051, 'ip' : 'localhost' },
                   reactor=reactor) is not None
    assert reactor.tcpClients[0][:2] == ('localhost', 9051)
    d = connect_control_port('tcp', 'tor.example.com:9151', reactor=reactor)
    assert not d.called
    assert reactor.tcpClients[1][:2] == ('tor.example.com', 9151)

def test_listen_needs_ip_address():
    reactor = MemoryReactor()
    assert listen(ServerFactory(), { 'port' : 9051, 'ip' : 'localhost' },
                  reactor=reactor) == []
    assert reactor.tcpServers == []

def test_connect_prefers_unix():
    reactor = MemoryReactor()
    factory = TorControlClientFactory()
    connect(factory, { 'port' : 9051, 'unix' : '/var/run/tor/control' },
            reactor=reactor)
    assert reactor.tcpClients == []
    assert reactor.unixClients[0][0] == '/var/run/tor/control'

def test_connect_invalid():
    reactor = MemoryReactor()
    assert connect(TorControlClientFactory(), { 'port' : -1 },
                   reactor=reactor) is None
    assert reactor.tcpClients == []

def test_listen():
    reactor = MemoryReactor()
    factory = ServerFactory()
    listeners = listen(factory, { 'port' : 9051, 'unix' : '/tmp/control' },
                       reactor=reactor)
    assert len(listeners) == 2
    assert reactor.tcpServers[0][0] == 9051
    assert reactor.tcpServers[0][3] == '127.0.0.1'
    assert reactor.unixServers[0][0] == '/tmp/control'
    stopListening(listeners)
    assert listen(factory, {}, reactor=reactor) == []

def test_connect_control_port():
    reactor = MemoryReactor()
    d = connect_control_port('tcp', '127.0.0.1:9151', reactor=reactor)
    host, port, factory, _, _ = reactor.tcpClients[0]
    assert (host, port) == ('127.0.0.1', 9151)
    assert not d.called
    client = factory.buildProtocol(IPv4Address('TCP', host, port))
    client.makeConnection(StringTransport())
    assert success_of(d) is client
    assert isinstance(client, TorControlClientProtocol)
    assert client.isConnected()

class FakeConnector(object):

    def getDestination(self):
        return IPv4Address('TCP', '127.0.0.1', 9051)

def test_connect_control_port_refused():
    reactor = MemoryReactor()
    d = connect_control_port('unix', '/var/run/tor/control', reactor=reactor)
    factory = reactor.unixClients[0][1]
    factory.clientConnectionFailed(FakeConnector(),
                                   Failure(ConnectionRefusedError()))
    e = failure_of(d, ControlConnectionError)
    assert isinstance(e, ConnectionError)

def test_connect_control_port_invalid():
    reactor = MemoryReactor()
    failure_of(connect_control_port('udp', '127.0.0.1:9051', reactor=reactor),
               ControlConnectionError)
    failure_of(connect_control_config({ 'port' : 0 }, reactor=reactor),
               ControlConnectionError)
    assert reactor.tcpClients == []

def test_transport_info():
    assert transport_info(None) == "(no transport)"
    info = transport_info(StringTransport())
    assert "remote:" in info
    assert "local:" in info
