"""Buffered streams over a large object.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


import codecs

from twisted.internet import defer

from pglo.protocol import IOFailure, ObjectFreed



class BlobInputStream(object):
    """A read stream over a large object.

    Data is read from the server in windows of bufferSize bytes.
    The stream supports mark and reset: after a mark, up to readlimit
    bytes are kept in memory, so reset needs no round trip.

    If limit is not None, the stream serves at most limit bytes, even
    if the object has more.
    """

    bufferSize = 4096

    def __init__(self, lo, bufferSize=None, limit=None):
        self.lo = lo
        if bufferSize is not None:
            self.bufferSize = bufferSize
        self.limit = limit

        self.apos = 0 # bytes served so far

        self._buffer = b""
        self._bpos = 0

        self._mpos = None # position of the last mark
        self._marked = None # bytes served since the last mark
        self._readlimit = 0

    @property
    def closed(self):
        return self.lo is None

    def _checkClosed(self):
        if self.lo is None:
            raise IOFailure("BlobInputStream is closed")
        if self.lo.closed:
            raise ObjectFreed("large object %d is closed" % self.lo.oid)

    def _remaining(self):
        # bytes still allowed by the limit, or None
        if self.limit is None:
            return None
        return max(self.limit - self.apos, 0)

    def _consume(self, size):
        # take at most size bytes from the window
        data = self._buffer[self._bpos:self._bpos + size]
        self._bpos += len(data)
        self.apos += len(data)

        if self._marked is not None:
            if len(self._marked) + len(data) > self._readlimit:
                # read past the mark limit; the mark is lost
                self._marked = None
            else:
                self._marked.extend(data)

        return data

    @defer.inlineCallbacks
    def read(self, size=-1):
        """Read at most size bytes (all the remaining data if size is
        negative).

        Return a deferred fired with the data; an empty result means
        end of stream.
        """

        self._checkClosed()

        remaining = self._remaining()
        if remaining is not None and (size < 0 or size > remaining):
            size = remaining

        chunks = []
        while size != 0:
            if self._bpos >= len(self._buffer):
                data = yield self.lo.read(self.bufferSize)
                if not data:
                    # end of object
                    break

                self._buffer = data
                self._bpos = 0

            if size < 0:
                chunk = self._consume(len(self._buffer))
            else:
                chunk = self._consume(size)
                size -= len(chunk)
            chunks.append(chunk)

        return b"".join(chunks)

    def mark(self, readlimit):
        """Mark the current position; reset will come back here, as
        long as no more than readlimit bytes have been read.
        """

        self._mpos = self.apos
        self._marked = bytearray()
        self._readlimit = readlimit

    def reset(self):
        """Reposition the stream at the last mark.
        """

        self._checkClosed()

        if self._mpos is None:
            raise IOFailure("reset without mark")
        if self._marked is None:
            raise IOFailure("mark invalidated, more than %d bytes read"
                            % self._readlimit)

        # push back the marked bytes
        self._buffer = bytes(self._marked) + self._buffer[self._bpos:]
        self._bpos = 0
        self.apos = self._mpos
        self._marked = bytearray()

    def markSupported(self):
        return True

    def close(self):
        """Close the stream, and its large object.

        Calling it again does nothing.
        """

        if self.lo is None:
            return defer.succeed(None)

        lo, self.lo = self.lo, None
        self._buffer = b""
        return lo.close()


class BlobOutputStream(object):
    """A write stream over a large object.

    Data is kept in memory until flush (or close) is called; it is
    then sent in chunks of bufferSize bytes.
    """

    bufferSize = 4096

    def __init__(self, lo, bufferSize=None):
        self.lo = lo
        if bufferSize is not None:
            self.bufferSize = bufferSize

        self._buffer = bytearray()

    @property
    def closed(self):
        return self.lo is None

    def _checkClosed(self):
        if self.lo is None:
            raise IOFailure("BlobOutputStream is closed")
        if self.lo.closed:
            raise ObjectFreed("large object %d is closed" % self.lo.oid)

    def write(self, data):
        self._checkClosed()

        self._buffer.extend(data)

    @defer.inlineCallbacks
    def flush(self):
        """Send all the buffered data to the server.
        """

        self._checkClosed()

        while self._buffer:
            chunk = bytes(self._buffer[:self.bufferSize])
            try:
                yield self.lo.write(chunk)
            except Exception as e:
                raise IOFailure("error writing to large object %d"
                                % self.lo.oid) from e

            del self._buffer[:len(chunk)]

    @defer.inlineCallbacks
    def close(self):
        """Flush the data, then close the large object.

        Calling it again does nothing, as does closing a stream whose
        large object has been closed.
        """

        if self.lo is None:
            return
        if self.lo.closed:
            self.lo = None
            return

        yield self.flush()

        lo, self.lo = self.lo, None
        if lo._os is self:
            # so that the large object will not flush us again
            lo._os = None

        yield lo.close()


class TextInputStream(object):
    """A character stream, decoding a BlobInputStream.
    """

    def __init__(self, stream, encoding="utf-8"):
        self.stream = stream
        self.encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)("strict")
        self._pending = ""

    @defer.inlineCallbacks
    def read(self, size=-1):
        """Read at most size characters; an empty result means end of
        stream.
        """

        if size < 0:
            data = yield self.stream.read()
            text = self._pending + self._decoder.decode(data, final=True)
            self._pending = ""
            return text

        while len(self._pending) < size:
            data = yield self.stream.read(self.stream.bufferSize)
            self._pending += self._decoder.decode(data, final=not data)
            if not data:
                break

        text, self._pending = self._pending[:size], self._pending[size:]
        return text

    def close(self):
        return self.stream.close()
