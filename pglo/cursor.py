"""Forward only byte scanning over a large object.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


from twisted.internet import defer

from pglo.largeobject import MAX_NARROW
from pglo.protocol import InvalidArgument



class PatternCursor(object):
    """Iterates over a large object returning byte values, starting
    from the current position of the descriptor.

    Data is read in windows of bufferSize bytes; once the object is
    exhausted the cursor can not be restarted.
    """

    bufferSize = 8192

    def __init__(self, lo):
        self.lo = lo

        self._window = b""
        self._idx = 0
        self.exhausted = False

    @classmethod
    def at(cls, lo, offset):
        """Return a deferred fired with a cursor starting at offset
        (0-based).
        """

        d = lo.seek64(offset) if offset > MAX_NARROW else lo.seek(offset)
        return d.addCallback(lambda _: cls(lo))

    def hasNext(self):
        """Return a deferred fired with True if there are more bytes.
        """

        if self._idx < len(self._window):
            return defer.succeed(True)
        if self.exhausted:
            return defer.succeed(False)

        return self.lo.read(self.bufferSize).addCallback(self._cbFill)

    def _cbFill(self, data):
        self._window = data
        self._idx = 0
        if not data:
            self.exhausted = True

        return bool(data)

    def next(self):
        b = self._window[self._idx]
        self._idx += 1
        return b

    @defer.inlineCallbacks
    def find(self, pattern, start):
        """Search pattern, scanning forward.

        start is the 1-based position of the first byte the cursor will
        return; return the 1-based position of the first match, or -1.

        On a mismatch the scan restarts from the next byte, with no
        backtracking, so that a match overlapping a partial match is
        not found (e.g. b"ab" in b"aab").
        """

        if not pattern:
            raise InvalidArgument("empty pattern")

        position = start
        patternIdx = 0
        candidate = -1

        while (yield self.hasNext()):
            b = self.next()
            if b == pattern[patternIdx]:
                if patternIdx == 0:
                    candidate = position
                patternIdx += 1
                if patternIdx == len(pattern):
                    return candidate
            else:
                patternIdx = 0

            position += 1

        return -1
