"""Large Objects support, using the Fast-Path interface.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


from zope.interface import implementer

from twisted.python import log
from twisted.internet import defer

from pglo import ipg
from pglo.fastpath import int4, int8, oid as oidArg
from pglo.protocol import InvalidArgument, IOFailure, ObjectFreed
from pglo.protocol import UnsupportedOperation
from pglo.streams import BlobInputStream, BlobOutputStream


# open modes (see libpq-fs.h)
INV_WRITE = 0x00020000
INV_READ = 0x00040000

READ = INV_READ
WRITE = INV_WRITE
READWRITE = INV_READ | INV_WRITE

# seek reference
SEEK_SET = 0 # from the begining of the object
SEEK_CUR = 1 # from the current position
SEEK_END = 2 # from the end of the object

# address modes
NARROW = "narrow" # 32 bit offsets
WIDE = "wide"     # 64 bit offsets, 9.3+

MAX_NARROW = 2 ** 31 - 1
MAX_WIDE = 2 ** 63 - 1

# all the functions we use; the 64 bit ones are only available on
# 9.3+ servers
FUNCTIONS = [
    "lo_open", "lo_close", "lo_creat", "lo_unlink",
    "lo_lseek", "lo_tell", "loread", "lowrite", "lo_truncate",
    ]
FUNCTIONS_64 = ["lo_lseek64", "lo_tell64", "lo_truncate64"]


def maxOffset(addressMode):
    """Return the last offset addressable in the given mode.
    """

    if addressMode == WIDE:
        return MAX_WIDE
    return MAX_NARROW

def addressModeFor(capabilities):
    if capabilities.supportsWideAddressing():
        return WIDE
    return NARROW


@defer.inlineCallbacks
def openLargeObject(fastpath, oid, mode, capabilities, conn=None,
                    commitOnClose=False):
    """Open a large object, returning a deferred fired with a
    LargeObject.

    If commitOnClose is true, conn (an object with a commit method) will
    be committed when the returned object is closed.
    """

    if commitOnClose and conn is None:
        raise InvalidArgument("commitOnClose requires a connection")

    fd = yield fastpath.getInteger("lo_open", oidArg(oid), int4(mode))
    return LargeObject(fastpath, oid, mode, fd, capabilities,
                       conn, commitOnClose)


@implementer(ipg.ILargeObject)
class LargeObject(object):
    """An open large object descriptor.

    This is similar to a file opened with the standard C library: all
    the methods return a deferred, and each of them is a round trip
    with the server, there is no caching.

    A closed object can not be reopened; use copy, or the manager,
    to obtain a new descriptor.
    """

    debug = False

    def __init__(self, fastpath, oid, mode, fd, capabilities,
                 conn=None, commitOnClose=False):
        self.fastpath = fastpath
        self.oid = oid
        self.mode = mode
        self.fd = fd
        self.capabilities = capabilities
        self.addressMode = addressModeFor(capabilities)

        # only used with commitOnClose
        self.conn = conn
        self.commitOnClose = commitOnClose

        self.closed = False
        self._os = None # the current output stream

        if self.debug:
            log.msg("large object %d opened, fd %d" % (oid, fd))

    def __repr__(self):
        return "<LargeObject oid=%d fd=%d%s>" % (
            self.oid, self.fd, self.closed and " closed" or "")

    def _call(self, call, name, *args):
        # helper: check the descriptor, then do the remote call
        if self.closed:
            return defer.fail(
                ObjectFreed("large object %d is closed" % self.oid))

        return call(name, int4(self.fd), *args)

    def _requireWide(self, name):
        if self.addressMode != WIDE:
            raise UnsupportedOperation(
                "%s requires 64 bit large object support (9.3+)" % name)

    def copy(self):
        """Open a new descriptor for the same object, so that streams
        do not share the current position.
        """

        if self.closed:
            return defer.fail(
                ObjectFreed("large object %d is closed" % self.oid))

        return openLargeObject(self.fastpath, self.oid, self.mode,
                               self.capabilities)

    @defer.inlineCallbacks
    def close(self):
        """Close the descriptor; calling it again does nothing.
        """

        if self.closed:
            return

        # flush any open output stream; it stays attached until the
        # data is sent
        if self._os is not None:
            try:
                yield self._os.flush()
            except IOFailure:
                raise
            except Exception as e:
                raise IOFailure("exception flushing output stream") from e
            self._os = None

        yield self._call(self.fastpath.getInteger, "lo_close")
        self.closed = True

        if self.debug:
            log.msg("large object %d closed, fd %d" % (self.oid, self.fd))

        if self.commitOnClose:
            yield self.conn.commit()

    def read(self, length):
        """Read at most length bytes.

        A short result is not an error; an empty one means the end
        of the object has been reached.
        """

        if length < 0:
            return defer.fail(InvalidArgument("negative read length"))
        if length > MAX_NARROW:
            return defer.fail(InvalidArgument(
                "at most %d bytes can be read at once" % MAX_NARROW))

        return self._call(self.fastpath.getData, "loread", int4(length))

    def readInto(self, buf, offset, length):
        """Read at most length bytes into the bytearray buf, starting
        at offset; return the number of bytes actually read.
        """

        def cbRead(data):
            buf[offset:offset + len(data)] = data
            return len(data)

        if offset < 0 or offset + length > len(buf):
            return defer.fail(InvalidArgument("buffer too small"))

        return self.read(length).addCallback(cbRead)

    def write(self, data, offset=0, length=None):
        """Write data (or length bytes of data, from offset).

        Either all the bytes are written or the call fails.
        """

        if length is None:
            length = len(data) - offset
        if offset < 0 or length < 0 or offset + length > len(data):
            return defer.fail(InvalidArgument("invalid offset or length"))

        chunk = bytes(data[offset:offset + length])
        d = self._call(self.fastpath.getInteger, "lowrite", chunk)
        return d.addCallback(lambda _: None)

    def seek(self, pos, whence=SEEK_SET):
        """Set the current position within the object, like fseek.
        """

        if whence not in (SEEK_SET, SEEK_CUR, SEEK_END):
            return defer.fail(InvalidArgument("invalid whence: %r" % whence))
        if not -MAX_NARROW - 1 <= pos <= MAX_NARROW:
            return defer.fail(InvalidArgument(
                "PostgreSQL LOBs can only index to: %d" % MAX_NARROW))

        return self._call(self.fastpath.getInteger, "lo_lseek",
                          int4(pos), int4(whence))

    def seek64(self, pos, whence=SEEK_SET):
        """Set the current position, using a 64 bit offset (9.3+).
        """

        if whence not in (SEEK_SET, SEEK_CUR, SEEK_END):
            return defer.fail(InvalidArgument("invalid whence: %r" % whence))
        try:
            self._requireWide("lo_lseek64")
        except UnsupportedOperation:
            return defer.fail()

        return self._call(self.fastpath.getLong, "lo_lseek64",
                          int8(pos), int4(whence))

    def tell(self):
        return self._call(self.fastpath.getInteger, "lo_tell")

    def tell64(self):
        try:
            self._requireWide("lo_tell64")
        except UnsupportedOperation:
            return defer.fail()

        return self._call(self.fastpath.getLong, "lo_tell64")

    @defer.inlineCallbacks
    def size(self):
        """Return the size of the object.

        This is inefficient, as the only way to find out the size of
        the object is to seek to the end, record the current position,
        then return to the original position.
        It is not atomic: another descriptor writing the same object
        between the two seeks makes the result stale.
        """

        current = yield self.tell()
        yield self.seek(0, SEEK_END)
        size = yield self.tell()
        yield self.seek(current, SEEK_SET)

        return size

    @defer.inlineCallbacks
    def size64(self):
        """See size for information about efficiency.
        """

        current = yield self.tell64()
        yield self.seek64(0, SEEK_END)
        size = yield self.tell64()
        yield self.seek64(current, SEEK_SET)

        return size

    def _checkTruncate(self, length):
        if not self.capabilities.supportsTruncate():
            raise UnsupportedOperation(
                "truncation of large objects is only implemented in "
                "8.3 and later servers")
        if length < 0:
            raise InvalidArgument("cannot truncate LOB to a negative length")

    def truncate(self, length):
        """Truncate the object to the given length in bytes.

        If the length is larger than the current object length, the
        object is filled with zero bytes. The current position is not
        modified.
        """

        try:
            self._checkTruncate(length)
        except (UnsupportedOperation, InvalidArgument):
            return defer.fail()

        if length > MAX_NARROW:
            return defer.fail(InvalidArgument(
                "PostgreSQL LOBs can only index to: %d" % MAX_NARROW))

        d = self._call(self.fastpath.getInteger, "lo_truncate",
                       int4(length))
        return d.addCallback(lambda _: None)

    def truncate64(self, length):
        """Truncate, with a 64 bit length (9.3+).
        """

        try:
            self._checkTruncate(length)
            self._requireWide("lo_truncate64")
        except (UnsupportedOperation, InvalidArgument):
            return defer.fail()

        d = self._call(self.fastpath.getInteger, "lo_truncate64",
                       int8(length))
        return d.addCallback(lambda _: None)

    def getInputStream(self, limit=None):
        """Return a buffered read stream for this object.

        If limit is given, the stream will serve at most limit bytes.
        """

        if self.closed:
            raise ObjectFreed("large object %d is closed" % self.oid)

        return BlobInputStream(self, limit=limit)

    def getOutputStream(self):
        """Return the buffered write stream for this object.

        There is only one output stream per descriptor.
        """

        if self.closed:
            raise ObjectFreed("large object %d is closed" % self.oid)

        if self._os is None:
            self._os = BlobOutputStream(self)
        return self._os


class SubHandleRegistry(object):
    """The descriptors opened on behalf of a BLOB/CLOB, other than
    the current one.

    We create separate descriptors for methods that use streams so they
    won't interfere with each other; when a read only descriptor is
    replaced by a writeable one, the old one is kept here too, since a
    stream may still be using it.
    All of them are closed by closeAll, even if the user never closed
    the streams.
    """

    def __init__(self):
        self._handles = []

    def __len__(self):
        return len(self._handles)

    def __iter__(self):
        return iter(list(self._handles))

    def add(self, lo):
        self._handles.append(lo)
        return lo

    retire = add

    def copy(self, lo):
        """Open a new descriptor on the same object as lo, and track it.
        """

        return lo.copy().addCallback(self.add)

    @defer.inlineCallbacks
    def closeAll(self):
        """Close all the descriptors.

        All the descriptors are closed even if some of them fail; the
        first failure is then reported, and the descriptors that could
        not be closed are kept for the next call.
        """

        handles, self._handles = self._handles, []

        first = None
        for lo in handles:
            try:
                yield lo.close()
            except Exception as e:
                log.err(e, "closing large object %d" % lo.oid)
                self._handles.append(lo)
                if first is None:
                    first = e

        if first is not None:
            raise first


@implementer(ipg.ILargeObjectManager)
class LargeObjectManager(object):
    """Access to the large object API of a connection.

    Use initialize (or Connection.getLargeObjectAPI) before use: it
    resolves the oids of the server functions.
    """

    def __init__(self, fastpath, capabilities, conn=None):
        self.fastpath = fastpath
        self.capabilities = capabilities
        self.conn = conn

    def initialize(self):
        names = list(FUNCTIONS)
        if self.capabilities.supportsWideAddressing():
            names.extend(FUNCTIONS_64)

        return self.fastpath.lookup(names).addCallback(lambda _: self)

    def open(self, oid, mode=READWRITE, commitOnClose=False):
        return openLargeObject(self.fastpath, oid, mode, self.capabilities,
                               self.conn, commitOnClose)

    def createLO(self, mode=READWRITE):
        """Create a new large object, returning its oid.
        """

        return self.fastpath.getOid("lo_creat", int4(mode))

    def unlink(self, oid):
        d = self.fastpath.getInteger("lo_unlink", oidArg(oid))
        return d.addCallback(lambda _: None)
