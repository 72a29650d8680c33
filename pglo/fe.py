"""PostgreSQL High level frontend interface

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


import os

from zope.interface import implementer

from twisted.python import log
from twisted.internet import defer

from pglo import ipg
from pglo.blob import Blob, Clob
from pglo.fastpath import Fastpath
from pglo.largeobject import LargeObjectManager
from pglo.protocol import PgFactory, connectionFailure


# server versions, as in libpq
v8_3 = 80300
v9_3 = 90300


class PgConnectionOption(object):
    """Class for storing connection options.

    Options given as keywords override the libpq environment
    variables, that override the defaults.
    Keywords that are not connection options are sent to the server
    as run-time parameters.
    """

    defaults = {
        "host": "localhost",
        "port": 5432,
        }

    envvars = {
        "host": "PGHOST",
        "port": "PGPORT",
        "user": "PGUSER",
        "password": "PGPASSWORD",
        "database": "PGDATABASE",
        "client_encoding": "PGCLIENTENCODING",
        }

    def __init__(self, environ=None, **kwargs):
        self.keywords = kwargs
        if environ is None:
            environ = os.environ
        self.environ = environ

        self.options = self.compile()

    def compile(self):
        options = dict(self.defaults)

        for key, name in self.envvars.items():
            if self.environ.get(name):
                options[key] = self.environ[name]

        for key, val in self.keywords.items():
            if val is not None:
                options[key] = val

        options["port"] = int(options["port"])
        if "database" not in options and "user" in options:
            options["database"] = options["user"]

        return options

    def __getitem__(self, key):
        return self.options[key]

    def get(self, key, default=None):
        return self.options.get(key, default)

    def loginParameters(self):
        """The parameters for PgProtocol.login.
        """

        parameters = self.options.copy()
        del parameters["host"]
        del parameters["port"]

        return parameters


@implementer(ipg.ICapabilities)
class Connection(object):
    """A logged in connection, with access to the large object API.
    """

    def __init__(self, protocol):
        self.protocol = protocol
        self.fastpath = Fastpath(protocol)

        self._lom = None

    @property
    def serverVersion(self):
        return self.protocol.serverVersion or 0

    @property
    def encoding(self):
        return getattr(self.protocol, "encoding", "utf-8")

    def haveMinimumServerVersion(self, version):
        return self.serverVersion >= version

    def supportsWideAddressing(self):
        return self.haveMinimumServerVersion(v9_3)

    def supportsTruncate(self):
        return self.haveMinimumServerVersion(v8_3)

    def execute(self, query):
        return self.protocol.execute(query)

    #
    # transactions; large object descriptors are only valid inside
    # a transaction block
    #
    def begin(self):
        return self.execute("BEGIN")

    def commit(self):
        return self.execute("COMMIT")

    def rollback(self):
        return self.execute("ROLLBACK")

    def getLargeObjectAPI(self):
        """Return a deferred fired with the LargeObjectManager of this
        connection.
        """

        def cbInitialize(lom):
            self._lom = lom
            return lom

        if self._lom is not None:
            return defer.succeed(self._lom)

        lom = LargeObjectManager(self.fastpath, self, self)
        return lom.initialize().addCallback(cbInitialize)

    def _create(self, factory):
        d = self.getLargeObjectAPI()
        d.addCallback(lambda lom: lom.createLO())
        return d.addCallback(lambda oid: factory(self, oid))

    def createBlob(self):
        """Allocate a new large object, returning a deferred fired with
        a Blob.
        """

        return self._create(Blob)

    def createClob(self):
        return self._create(Clob)

    def getBlob(self, oid):
        return Blob(self, oid)

    def getClob(self, oid):
        return Clob(self, oid)

    def close(self):
        self.protocol.finish()


class ConnectFactory(PgFactory):
    """A factory firing a deferred when the connection is made.
    """

    def __init__(self):
        self.deferred = defer.Deferred()

    def clientConnectionMade(self, protocol):
        self.deferred.callback(protocol)

    def clientConnectionFailed(self, connector, reason):
        log.msg("Connection failed. Reason:", reason.getErrorMessage())
        self.deferred.errback(
            connectionFailure("connection failed", reason.value))


def connect(environ=None, **kwargs):
    """Connect to a PostgreSQL database, returns a deferred fired with
    a Connection.

    host can be a TCP address or the directory of the Unix domain
    socket, as in libpq.
    """

    from twisted.internet import reactor

    options = PgConnectionOption(environ, **kwargs)
    factory = ConnectFactory()

    host, port = options["host"], options["port"]
    if host.startswith("/"):
        path = os.path.join(host, ".s.PGSQL.%d" % port)
        reactor.connectUNIX(path, factory)
    else:
        reactor.connectTCP(host, port, factory)

    def cbConnect(protocol):
        d = protocol.login(**options.loginParameters())
        return d.addCallback(lambda _: Connection(protocol))

    return factory.deferred.addCallback(cbConnect)
