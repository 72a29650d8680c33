"""Fast-Path access to server functions, by name.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


from struct import pack, unpack, calcsize

from zope.interface import implementer

from twisted.python import log
from twisted.internet import defer

from pglo import ipg
from pglo.protocol import FORMAT_BINARY
from pglo.protocol import ConnectionFailure, InvalidRequest
from pglo.protocol import UnsupportedOperation, connectionFailure



#
# Binary argument encoders
#
def int4(value):
    return pack("!i", value)

def int8(value):
    return pack("!q", value)

def oid(value):
    return pack("!I", value)


@implementer(ipg.IFunctionCaller)
class Fastpath(object):
    """Call server functions by name, with binary arguments.

    The protocol object only knows function oids: names are resolved
    with a single query on pg_proc, and the result is cached.

    Failures from the protocol are reported as ConnectionFailure,
    with the original error as cause; this layer does no retries.
    """

    debug = False

    def __init__(self, protocol):
        """protocol is an IFastPath object.
        """

        self.protocol = protocol
        self.functions = {}

    def addFunction(self, name, fnid):
        self.functions[name] = fnid

    def lookup(self, names):
        missing = [name for name in names if name not in self.functions]
        if not missing:
            return defer.succeed(self.functions)

        query = "SELECT proname, oid FROM pg_catalog.pg_proc " \
            "WHERE proname IN (%s)" % ", ".join(
            "'%s'" % name for name in missing)

        d = self.protocol.execute(query)
        d.addErrback(self._ebCall, "pg_proc lookup")
        d.addCallback(self._cbLookup, missing)

        return d

    def _cbLookup(self, result, names):
        for name, fnid in result.rows:
            self.addFunction(name.decode("ascii"), int(fnid))

        unknown = [name for name in names if name not in self.functions]
        if unknown:
            raise UnsupportedOperation(
                "server functions not found: %s" % ", ".join(unknown))

        if self.debug:
            log.msg("fastpath functions:", self.functions)

        return self.functions

    def fastpath(self, name, *args):
        fnid = self.functions.get(name)
        if fnid is None:
            return defer.fail(
                UnsupportedOperation("the fastpath function %s is unknown"
                                     % name))

        if self.debug:
            log.msg("fastpath call:", name)

        d = self.protocol.fn(fnid, FORMAT_BINARY, *args)
        return d.addErrback(self._ebCall, name)

    def _ebCall(self, reason, name):
        if reason.check(ConnectionFailure):
            return reason

        raise connectionFailure(
            "%s failed: %s" % (name, reason.getErrorMessage()), reason.value)

    def _decode(self, data, name, fmt):
        if data is None:
            raise InvalidRequest(
                "fastpath call %s - no result was returned and we "
                "expected a numeric" % name)

        if len(data) != calcsize(fmt):
            raise InvalidRequest(
                "fastpath call %s - %d bytes returned, expected %d"
                % (name, len(data), calcsize(fmt)))

        (value,) = unpack(fmt, data)
        return value

    def getInteger(self, name, *args):
        return self.fastpath(name, *args).addCallback(
            self._decode, name, "!i")

    def getLong(self, name, *args):
        return self.fastpath(name, *args).addCallback(
            self._decode, name, "!q")

    def getOid(self, name, *args):
        return self.fastpath(name, *args).addCallback(
            self._decode, name, "!I")

    def getData(self, name, *args):
        return self.fastpath(name, *args).addCallback(
            lambda data: data or b"")
