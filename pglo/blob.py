"""BLOB and CLOB values, stored as large objects.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


import functools

from zope.interface import implementer

from twisted.python import log
from twisted.internet import defer

from pglo import ipg, largeobject
from pglo.cursor import PatternCursor
from pglo.largeobject import WIDE, MAX_NARROW
from pglo.largeobject import SubHandleRegistry, addressModeFor, maxOffset
from pglo.protocol import InvalidArgument, ObjectFreed
from pglo.protocol import UnsupportedOperation
from pglo.streams import TextInputStream


# descriptor state
UNOPENED = 0
READONLY = 1
READWRITE = 2


def synchronized(method):
    """Run the method with the object lock held, so that concurrent
    calls do not interleave their round trips.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        return self._lock.run(method, self, *args, **kwargs)

    return wrapper


@implementer(ipg.IBlobClob)
class BlobClob(object):
    """This class holds all of the methods common to both Blobs and
    Clobs.

    The large object is opened on first use, read only if the first
    operation does not need to write; a later write reopens it read
    write at the same position.
    Streams get their own descriptors, so they won't interfere with
    each other.
    """

    debug = False

    def __init__(self, conn, oid):
        """conn is a pglo.fe.Connection, oid the large object oid.
        """

        self.conn = conn
        self.oid = oid

        self.currentLo = None
        self.mode = UNOPENED
        self.addressMode = addressModeFor(conn)

        self.subLOs = SubHandleRegistry()
        self.freed = False

        self._lock = defer.DeferredLock()

    def __repr__(self):
        return "<%s oid=%d>" % (self.__class__.__name__, self.oid)

    def _checkFreed(self):
        if self.freed:
            raise ObjectFreed("free() was called on this LOB previously")

    def _assertPosition(self, pos, length=0):
        """Raise an exception if pos is not a valid position for length
        bytes, in the current address mode.
        """

        self._checkFreed()

        if pos < 1:
            raise InvalidArgument("LOB positioning offsets start at 1")
        if length < 0:
            raise InvalidArgument("negative length")

        last = maxOffset(self.addressMode)
        if pos + length - 1 > last:
            raise InvalidArgument("PostgreSQL LOBs can only index to: %d"
                                  % last)

    def _seek(self, lo, offset):
        if offset > MAX_NARROW:
            return lo.seek64(offset)
        return lo.seek(offset)

    def _tell(self, lo):
        if self.addressMode == WIDE:
            return lo.tell64()
        return lo.tell()

    @defer.inlineCallbacks
    def _getLo(self, forWrite):
        """Return the current descriptor, opening it if needed.

        The lock must be held.
        """

        if self.currentLo is not None:
            if forWrite and self.mode != READWRITE:
                # reopen the object read write, at the same position
                current = yield self._tell(self.currentLo)

                lom = yield self.conn.getLargeObjectAPI()
                lo = yield lom.open(self.oid, largeobject.READWRITE)

                # a stream can still use the old descriptor
                self.subLOs.retire(self.currentLo)
                self.currentLo = lo
                self.mode = READWRITE

                if current != 0:
                    yield self._seek(lo, current)

                if self.debug:
                    log.msg("large object %d reopened for write, fd %d"
                            % (self.oid, lo.fd))

            return self.currentLo

        lom = yield self.conn.getLargeObjectAPI()
        mode = forWrite and largeobject.READWRITE or largeobject.READ
        self.currentLo = yield lom.open(self.oid, mode)
        self.mode = forWrite and READWRITE or READONLY

        return self.currentLo

    @synchronized
    @defer.inlineCallbacks
    def free(self):
        """Close all the descriptors; the object can no longer be used.

        If some descriptor can not be closed, the object is freed anyway
        and calling free again retries the close; otherwise calling it
        again does nothing.
        """

        if self.freed and self.currentLo is None and not self.subLOs:
            return

        self.freed = True

        first = None
        if self.currentLo is not None:
            try:
                yield self.currentLo.close()
                self.currentLo = None
            except Exception as e:
                first = e

        try:
            yield self.subLOs.closeAll()
        except Exception as e:
            if first is None:
                first = e
            else:
                log.err(e, "freeing large object %d" % self.oid)

        if first is not None:
            raise first

    @synchronized
    @defer.inlineCallbacks
    def truncate(self, length):
        """Truncate the object to length bytes.

        For Blobs length is in bytes; Clobs use bytes too, since the
        character set is not known to the server side object.
        """

        self._checkFreed()

        if not self.conn.supportsTruncate():
            raise UnsupportedOperation(
                "truncation of large objects is only implemented in "
                "8.3 and later servers")
        if length < 0:
            raise InvalidArgument("cannot truncate LOB to a negative length")

        if length > MAX_NARROW:
            if self.addressMode != WIDE:
                raise InvalidArgument(
                    "PostgreSQL LOBs can only index to: %d" % MAX_NARROW)

            lo = yield self._getLo(True)
            yield lo.truncate64(length)
        else:
            lo = yield self._getLo(True)
            yield lo.truncate(length)

    @synchronized
    @defer.inlineCallbacks
    def length(self):
        self._checkFreed()

        lo = yield self._getLo(False)
        if self.addressMode == WIDE:
            size = yield lo.size64()
        else:
            size = yield lo.size()

        return size

    length64 = length

    @synchronized
    @defer.inlineCallbacks
    def getBytes(self, pos, length):
        """Return at most length bytes, from the 1-based position pos.
        """

        self._assertPosition(pos, length)
        if length > MAX_NARROW:
            raise InvalidArgument("at most %d bytes can be read at once"
                                  % MAX_NARROW)

        lo = yield self._getLo(False)
        yield self._seek(lo, pos - 1)
        data = yield lo.read(length)

        return data

    @synchronized
    @defer.inlineCallbacks
    def setBytes(self, pos, data, offset=0, length=None):
        """Write data at the 1-based position pos; return the number
        of bytes written.
        """

        if length is None:
            length = len(data) - offset
        self._assertPosition(pos, length)

        lo = yield self._getLo(True)
        yield self._seek(lo, pos - 1)
        yield lo.write(data, offset, length)

        return length

    @synchronized
    @defer.inlineCallbacks
    def getBinaryStream(self, pos=1, length=None):
        """Return a read stream, starting at pos, that will serve at
        most length bytes if length is not None.
        """

        self._assertPosition(pos, length or 0)

        lo = yield self._getLo(False)
        subLO = yield self.subLOs.copy(lo)
        yield self._seek(subLO, pos - 1)

        return subLO.getInputStream(length)

    @synchronized
    @defer.inlineCallbacks
    def setBinaryStream(self, pos):
        """Return a write stream, starting at pos.
        """

        self._assertPosition(pos)

        lo = yield self._getLo(True)
        subLO = yield self.subLOs.copy(lo)
        yield self._seek(subLO, pos - 1)

        return subLO.getOutputStream()

    def _patternBytes(self, pattern):
        # pattern contents, as a deferred
        if isinstance(pattern, BlobClob):
            return pattern.length().addCallback(
                lambda length: pattern.getBytes(1, length))

        return defer.succeed(bytes(pattern))

    def position(self, pattern, start):
        """Return the 1-based position of pattern (bytes, or another
        BLOB/CLOB) from start, or -1 if not found.
        """

        # the pattern object has its own lock, and can be self
        d = self._patternBytes(pattern)
        return d.addCallback(self._position, start)

    @synchronized
    @defer.inlineCallbacks
    def _position(self, pattern, start):
        self._assertPosition(start, len(pattern))

        lo = yield self._getLo(False)
        cursor = yield PatternCursor.at(lo, start - 1)
        result = yield cursor.find(pattern, start)

        return result


class Blob(BlobClob):
    """A BLOB value.
    """


class Clob(BlobClob):
    """A CLOB value.

    Lengths and positions are in bytes; characters are decoded with the
    connection client encoding.
    """

    def __init__(self, conn, oid, encoding=None):
        BlobClob.__init__(self, conn, oid)
        self.encoding = encoding or getattr(conn, "encoding", "utf-8")

    def getAsciiStream(self):
        return self.getBinaryStream()

    def setAsciiStream(self, pos):
        return self.setBinaryStream(pos)

    def getCharacterStream(self):
        d = self.getBinaryStream()
        return d.addCallback(TextInputStream, self.encoding)

    def getSubString(self, pos, length):
        d = self.getBytes(pos, length)
        return d.addCallback(lambda data: data.decode(self.encoding,
                                                      "replace"))

    def _patternBytes(self, pattern):
        if isinstance(pattern, str):
            return defer.succeed(pattern.encode(self.encoding))

        return BlobClob._patternBytes(self, pattern)
