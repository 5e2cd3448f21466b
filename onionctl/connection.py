# See LICENSE for licensing information

import logging

from twisted.internet import reactor as default_reactor

from onionctl.config import validate_ip_address

# Function abstractions for building connections
# Like connectionFromString, but using the reactor model

# The default listener addresses for each IP version
# These depend on whether we are listening on the loopback interface or not
IP_LISTEN_DEFAULT = {
    4 : { True : '127.0.0.1', False : '0.0.0.0' },
    6 : { True : '::1',       False : '::' }
}

# The default connector addresses for each IP version
# These only make sense if we are connecting to the loopback interface
IP_CONNECT_DEFAULT = {
    4 : '127.0.0.1',
    6 : '::1'
}

def listen(factory, config, ip_local_default=True, ip_version_default=4,
           reactor=None):
    '''
    Set up factory to listen for connections, based on config, which is a
    dictionary containing listening configuration information:
    IP addresses:
      port: IP port
      ip: IPv4 or IPv6 address (optional)
    UNIX sockets:
      unix: Unix socket path
    If there is a port, but no ip:
    - if ip_local_default is True, IP listeners listen on localhost, otherwise
    - if it is False, they listen on all interfaces.
    ip_version_default is the IP version they listen on.
    The default is to listen on IPv4 localhost, to avoid opening unexpected
    public ports.
    Returns a list of listener objects, which is empty if config is invalid.
    '''
    reactor = reactor or default_reactor
    listeners = []
    if not validate_connection_config(config):
        return listeners
    if 'unix' in config:
        listeners.append(reactor.listenUNIX(config['unix'], factory))
    if 'port' in config:
        port = int(config['port'])
        ip = config.get('ip',
                        IP_LISTEN_DEFAULT[ip_version_default][ip_local_default])
        listeners.append(reactor.listenTCP(port, factory, interface=ip))
    return listeners

def stopListening(listeners):
    '''
    Make every listener in listeners stop listening.
    '''
    for item in listeners:
        item.stopListening()

def connect(factory, config, ip_local_default=True, ip_version_default=4,
            reactor=None):
    '''
    Set up factory to connect to a control port, based on config, which is a
    dictionary containing connection configuration information, in the same
    format as listen().
    Unix sockets are preferred over IP ports, the filesystem is typically more
    secure.
    The ip item may be an IP address or a host name.
    If there is a port, but no ip:
    - if ip_local_default is True, IP connections connect to localhost on
      IP version ip_version_default.
    - if ip_local_default is False, IP connections must have an ip
      address.
    Returns a connector object, or None if config is invalid.
    '''
    reactor = reactor or default_reactor
    if not validate_connection_config(config,
                                      must_have_ip=(not ip_local_default),
                                      allow_hostname=True):
        return None
    if 'unix' in config:
        return reactor.connectUNIX(config['unix'], factory)
    port = int(config['port'])
    ip = config.get('ip', IP_CONNECT_DEFAULT[ip_version_default])
    return reactor.connectTCP(ip, port, factory)

def parse_control_address(network, address):
    '''
    Turn a network name ('tcp' or 'unix') and an address ('host:port',
    '[v6host]:port', 'port' or a socket path) into a connection config.
    Raises ValueError if network is unknown, or the address can not be
    parsed.
    '''
    if network == 'unix':
        return { 'unix' : address }
    if network not in ['tcp', 'tcp4', 'tcp6']:
        raise ValueError("Unknown network '{}'".format(network))
    host, sep, port = str(address).rpartition(':')
    if len(sep) == 0:
        # just a port
        return { 'port' : int(port) }
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    if len(host) == 0:
        return { 'port' : int(port) }
    return { 'ip' : host, 'port' : int(port) }

def validate_connection_config(config, must_have_ip=False,
                               allow_hostname=False):
    '''
    Check that config is valid.
    If must_have_ip is True, config must have an IP address if it has a port.
    If allow_hostname is True, the ip item may also be a host name, which the
    reactor resolves when connecting. Listeners always need an IP address.
    Returns False if config is invalid, True otherwise.
    Logs a warning for the first invalid config item found.
    '''
    if config is None:
        logging.warning("Invalid config: None")
        return False
    if 'port' not in config and 'unix' not in config:
        logging.warning("Invalid config: needs a port or unix path")
        return False
    if 'port' in config:
        if _config_missing(config, 'port', False):
            logging.warning("Invalid port: missing value")
            return False
        try:
            port = int(config['port'])
        except ValueError as e:
            logging.warning("Invalid port {}: {}".format(config['port'], e))
            return False
        if port <= 0 or port > 65535:
            logging.warning("Port {} must be between 1 and 65535"
                            .format(port))
            return False
        if must_have_ip and _config_missing(config, 'ip'):
            logging.warning("Port {} must have an IP address".format(port))
            return False
        if 'ip' in config:
            if _config_missing(config, 'ip'):
                logging.warning("Invalid ip: missing value")
                return False
            if allow_hostname and check_hostname(config['ip']):
                pass
            elif validate_ip_address(config['ip']) is None:
                logging.warning("Invalid ip: {}".format(config['ip']))
                return False
    elif 'ip' in config:
        logging.warning("IP {} must have a port".format(config['ip']))
        return False
    if 'unix' in config:
        if _config_missing(config, 'unix'):
            logging.warning("Invalid unix path: missing value")
            return False
        # let the libraries catch other errors later
    return True

def check_hostname(host):
    '''
    Return True if host looks like a DNS host name, and False otherwise.
    '''
    host = str(host)
    if len(host) == 0 or len(host) > 253:
        return False
    for label in host.rstrip('.').split('.'):
        if len(label) == 0 or len(label) > 63:
            return False
        if label.startswith('-') or label.endswith('-'):
            return False
        if not all(c.isascii() and (c.isalnum() or c in '-_') for c in label):
            return False
    return True

def _config_missing(config, key, check_len=True):
    '''
    Return True if config is missing key, or if config[key] is None.
    If check_len is True, also return True if len(config[key]) is 0.
    '''
    if key not in config:
        return True
    if config[key] is None:
        return True
    if check_len and len(config[key]) == 0:
        return True
    return False

def transport_info(transport):
    '''
    Return a string describing the remote peer and local endpoint connected
    via transport
    '''
    if transport is None:
        return "(no transport)"
    local_str = transport_local_info(transport)
    peer_str = transport_remote_info(transport)
    if local_str is not None and peer_str is not None:
        return "remote: {} local: {}".format(peer_str, local_str)
    elif local_str is not None:
        return "local: {}".format(local_str)
    elif peer_str is not None:
        return "remote: {}".format(peer_str)
    else:
        return None

def transport_remote_info(transport):
    '''
    Return a string describing the remote peer connected to transport
    '''
    try:
        remote = transport.getPeer()
    except AttributeError:
        return None
    return address_info(remote)

def transport_local_info(transport):
    '''
    Return a string describing the local endpoint connected to transport
    '''
    try:
        local = transport.getHost()
    except AttributeError:
        return None
    if local is None:
        return None
    return address_info(local)

def address_info(address):
    '''
    Return a string describing the address
    '''
    host_str = address_hostname(address)
    port_str = address_port(address)
    if host_str is None:
        return "(port:{})".format(port_str)
    if port_str is None:
        return host_str
    return "{}:{}".format(host_str, port_str)

def address_hostname(address):
    '''
    Return a string describing the host portion of an address.
    '''
    if address is None:
        return None
    # Looks like an IPv4Address or IPv6Address
    try:
        return "{}".format(address.host)
    except AttributeError:
        pass
    # Looks like a UNIXAddress
    try:
        # Handle host for UNIXAddress, which is always None
        if address.name is None:
            return None
        else:
            name = address.name
            if isinstance(name, bytes):
                name = name.decode('utf-8', 'replace')
            return "{}".format(name)
    except AttributeError:
        pass
    # Just ask it how it wants to be represented
    return str(address)

def address_port(address):
    '''
    Return a string describing port portion of an address
    If there is no port portion, returns None
    '''
    # Looks like an IPv4Address or IPv6Address
    try:
        return "{}".format(address.port)
    except AttributeError:
        pass
    # We don't know any other way to get a port
    return None
