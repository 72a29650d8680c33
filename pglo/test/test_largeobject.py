"""Test suite for large object descriptors

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""


from twisted.trial import unittest

from pglo import protocol
from pglo.fe import Connection
from pglo.largeobject import READ, READWRITE, SEEK_CUR, SEEK_END
from pglo.largeobject import MAX_NARROW, NARROW, WIDE
from pglo.largeobject import SubHandleRegistry, openLargeObject
from pglo.test.fakebackend import FakeBackend, serverError



class TestCaseCommon(unittest.TestCase):
    """Common methods for our Test Case
    """

    serverVersion = 90300

    def setUp(self):
        self.backend = FakeBackend(self.serverVersion)
        self.conn = Connection(self.backend)
        self.lom = self.successResultOf(self.conn.getLargeObjectAPI())

        self.oid = self.backend.create(b"hello world")

    def open(self, mode=READWRITE, **kwargs):
        return self.successResultOf(self.lom.open(self.oid, mode, **kwargs))

    def data(self):
        return bytes(self.backend.objects[self.oid])


class TestRead(TestCaseCommon):
    def testRead(self):
        lo = self.open(READ)

        self.assertEqual(self.successResultOf(lo.read(5)), b"hello")
        self.assertEqual(self.successResultOf(lo.read(100)), b" world")
        self.assertEqual(self.successResultOf(lo.read(10)), b"")

    def testReadNegative(self):
        lo = self.open(READ)
        self.failureResultOf(lo.read(-1), protocol.InvalidArgument)

    def testReadTooLarge(self):
        lo = self.open(READ)

        d = lo.read(MAX_NARROW + 1)
        self.failureResultOf(d, protocol.InvalidArgument)
        self.assertNotIn("loread", self.backend.calls)

    def testReadInto(self):
        lo = self.open(READ)
        buf = bytearray(8)

        n = self.successResultOf(lo.readInto(buf, 2, 5))
        self.assertEqual(n, 5)
        self.assertEqual(buf, bytearray(b"\0\0hello\0"))

    def testReadIntoShort(self):
        lo = self.open(READ)
        self.successResultOf(lo.seek(6))
        buf = bytearray(10)

        n = self.successResultOf(lo.readInto(buf, 0, 10))
        self.assertEqual(n, 5)
        self.assertEqual(buf[:5], bytearray(b"world"))

    def testReadIntoTooSmall(self):
        lo = self.open(READ)
        d = lo.readInto(bytearray(4), 2, 5)
        self.failureResultOf(d, protocol.InvalidArgument)


class TestWrite(TestCaseCommon):
    def testWrite(self):
        lo = self.open()

        self.assertIdentical(self.successResultOf(lo.write(b"HELLO")), None)
        self.assertEqual(self.data(), b"HELLO world")

    def testWriteSlice(self):
        lo = self.open()
        self.successResultOf(lo.seek(6))

        self.successResultOf(lo.write(b"xxWORLDxx", 2, 5))
        self.assertEqual(self.data(), b"hello WORLD")

    def testWriteInvalidSlice(self):
        lo = self.open()
        d = lo.write(b"data", 2, 5)
        self.failureResultOf(d, protocol.InvalidArgument)

    def testWriteReadOnly(self):
        lo = self.open(READ)

        failure = self.failureResultOf(lo.write(b"data"),
                                       protocol.ConnectionFailure)
        self.assertEqual(failure.value.reason.errorField("C"), "55000")
        self.assertEqual(self.data(), b"hello world")


class TestSeek(TestCaseCommon):
    def testSeek(self):
        lo = self.open(READ)

        self.assertEqual(self.successResultOf(lo.seek(6)), 6)
        self.assertEqual(self.successResultOf(lo.tell()), 6)
        self.assertEqual(self.successResultOf(lo.seek(-5, SEEK_END)), 6)
        self.assertEqual(self.successResultOf(lo.seek(1, SEEK_CUR)), 7)
        self.assertEqual(self.successResultOf(lo.read(4)), b"orld")

    def testInvalidWhence(self):
        lo = self.open(READ)
        self.failureResultOf(lo.seek(0, 3), protocol.InvalidArgument)
        self.failureResultOf(lo.seek64(0, 3), protocol.InvalidArgument)

    def testOutOfRange(self):
        lo = self.open(READ)
        d = lo.seek(MAX_NARROW + 1)
        self.failureResultOf(d, protocol.InvalidArgument)

        self.assertNotIn("lo_lseek", self.backend.calls)

    def testSeek64(self):
        lo = self.open(READ)

        pos = MAX_NARROW + 10
        self.assertEqual(self.successResultOf(lo.seek64(pos)), pos)
        self.assertEqual(self.successResultOf(lo.tell64()), pos)

    def testSize(self):
        lo = self.open(READ)
        self.successResultOf(lo.seek(3))

        self.assertEqual(self.successResultOf(lo.size()), 11)
        self.assertEqual(self.successResultOf(lo.tell()), 3)

        self.assertEqual(self.successResultOf(lo.size64()), 11)
        self.assertEqual(self.successResultOf(lo.tell64()), 3)


class TestTruncate(TestCaseCommon):
    def testTruncate(self):
        lo = self.open()
        self.successResultOf(lo.seek(2))

        self.assertIdentical(self.successResultOf(lo.truncate(5)), None)
        self.assertEqual(self.data(), b"hello")

        # the position is not modified
        self.assertEqual(self.successResultOf(lo.tell()), 2)

    def testExtend(self):
        lo = self.open()

        self.successResultOf(lo.truncate(13))
        self.assertEqual(self.data(), b"hello world\0\0")

    def testTruncate64(self):
        lo = self.open()

        self.successResultOf(lo.truncate64(4))
        self.assertEqual(self.data(), b"hell")

    def testNegative(self):
        lo = self.open()
        self.failureResultOf(lo.truncate(-1), protocol.InvalidArgument)
        self.failureResultOf(lo.truncate64(-1), protocol.InvalidArgument)

    def testTooLarge(self):
        lo = self.open()
        d = lo.truncate(MAX_NARROW + 1)
        self.failureResultOf(d, protocol.InvalidArgument)

    def testReadOnly(self):
        lo = self.open(READ)
        self.failureResultOf(lo.truncate(0), protocol.ConnectionFailure)


class TestClose(TestCaseCommon):
    def testClose(self):
        lo = self.open()
        self.successResultOf(lo.close())

        self.assertTrue(lo.closed)
        self.assertEqual(self.backend.openDescriptors(), 0)

        for d in lo.read(1), lo.tell(), lo.seek(0), lo.copy():
            self.failureResultOf(d, protocol.ObjectFreed)
        self.assertRaises(protocol.ObjectFreed, lo.getInputStream)
        self.assertRaises(protocol.ObjectFreed, lo.getOutputStream)

    def testCloseTwice(self):
        lo = self.open()
        self.successResultOf(lo.close())
        self.successResultOf(lo.close())

        self.assertEqual(self.backend.calls.count("lo_close"), 1)

    def testCommitOnClose(self):
        lo = self.open(commitOnClose=True)
        self.assertNotIn("COMMIT", self.backend.queries)

        self.successResultOf(lo.close())
        self.assertEqual(self.backend.queries[-1], "COMMIT")

    def testCommitOnCloseRequiresConnection(self):
        d = openLargeObject(self.conn.fastpath, self.oid, READWRITE,
                            self.conn, commitOnClose=True)
        self.failureResultOf(d, protocol.InvalidArgument)

    def testFlushOutputStream(self):
        lo = self.open()
        os = lo.getOutputStream()
        os.write(b"HELLO")
        self.assertEqual(self.data(), b"hello world")

        self.successResultOf(lo.close())
        self.assertEqual(self.data(), b"HELLO world")

    def testFlushFailure(self):
        lo = self.open()
        os = lo.getOutputStream()
        os.write(b"HELLO")

        self.backend.failures["lowrite"] = serverError("disk full", "53100")

        self.failureResultOf(lo.close(), protocol.IOFailure)
        self.assertNotIn("lo_close", self.backend.calls)
        self.assertFalse(lo.closed)
        self.assertIdentical(lo._os, os)

        # the data is sent when closing again
        self.successResultOf(lo.close())
        self.assertTrue(lo.closed)
        self.assertEqual(self.data(), b"HELLO world")

    def testCopy(self):
        lo = self.open(READ)
        self.successResultOf(lo.seek(6))

        other = self.successResultOf(lo.copy())
        self.assertNotEqual(other.fd, lo.fd)
        self.assertEqual(other.oid, lo.oid)
        self.assertEqual(other.mode, lo.mode)

        self.assertEqual(self.successResultOf(other.read(5)), b"hello")
        self.assertEqual(self.successResultOf(lo.read(5)), b"world")


class TestNarrowServer(TestCaseCommon):
    serverVersion = 90200

    def testAddressMode(self):
        lo = self.open()
        self.assertEqual(lo.addressMode, NARROW)

    def testNoFunctions64(self):
        self.assertNotIn("lo_lseek64", self.conn.fastpath.functions)

    def testWideUnsupported(self):
        lo = self.open()

        self.failureResultOf(lo.seek64(0), protocol.UnsupportedOperation)
        self.failureResultOf(lo.tell64(), protocol.UnsupportedOperation)
        self.failureResultOf(lo.truncate64(0),
                             protocol.UnsupportedOperation)
        self.assertEqual(self.backend.calls, ["lo_open"])

    def testSize(self):
        lo = self.open()
        self.assertEqual(self.successResultOf(lo.size()), 11)


class TestOldServer(TestCaseCommon):
    serverVersion = 80200

    def testTruncateUnsupported(self):
        lo = self.open()

        self.failureResultOf(lo.truncate(0), protocol.UnsupportedOperation)
        self.assertNotIn("lo_truncate", self.backend.calls)
        self.assertEqual(self.data(), b"hello world")


class TestWideServer(TestCaseCommon):
    def testAddressMode(self):
        lo = self.open()
        self.assertEqual(lo.addressMode, WIDE)


class TestSubHandleRegistry(TestCaseCommon):
    def testCopy(self):
        registry = SubHandleRegistry()
        lo = self.open(READ)

        other = self.successResultOf(registry.copy(lo))
        self.assertEqual(list(registry), [other])

    def testCloseAll(self):
        registry = SubHandleRegistry()
        lo = self.open(READ)

        handles = [self.successResultOf(registry.copy(lo))
                   for i in range(3)]
        registry.retire(lo)
        self.assertEqual(len(registry), 4)

        self.successResultOf(registry.closeAll())

        self.assertEqual(len(registry), 0)
        for handle in handles + [lo]:
            self.assertTrue(handle.closed)
        self.assertEqual(self.backend.openDescriptors(), 0)

    def testCloseAllFailure(self):
        registry = SubHandleRegistry()
        lo = self.open(READ)

        handles = [self.successResultOf(registry.copy(lo))
                   for i in range(3)]
        self.backend.failures["lo_close"] = serverError("broken")

        d = registry.closeAll()
        self.failureResultOf(d, protocol.ConnectionFailure)
        errors = self.flushLoggedErrors(protocol.ConnectionFailure)
        self.assertEqual(len(errors), 1)

        # the other descriptors are closed anyway
        self.assertFalse(handles[0].closed)
        self.assertTrue(handles[1].closed)
        self.assertTrue(handles[2].closed)
        self.assertEqual(list(registry), [handles[0]])

        self.successResultOf(registry.closeAll())
        self.assertTrue(handles[0].closed)
        self.assertEqual(len(registry), 0)
        self.assertEqual(self.backend.openDescriptors(), 1)


class TestLargeObjectManager(TestCaseCommon):
    def testCreate(self):
        oid = self.successResultOf(self.lom.createLO())

        self.assertNotEqual(oid, self.oid)
        self.assertEqual(self.backend.objects[oid], bytearray())

        lo = self.successResultOf(self.lom.open(oid))
        self.successResultOf(lo.write(b"new"))
        self.assertEqual(self.backend.objects[oid], bytearray(b"new"))

    def testUnlink(self):
        self.successResultOf(self.lom.unlink(self.oid))
        self.assertNotIn(self.oid, self.backend.objects)

        d = self.lom.unlink(self.oid)
        self.failureResultOf(d, protocol.ConnectionFailure)

    def testOpenMissing(self):
        d = self.lom.open(self.oid + 100)
        self.failureResultOf(d, protocol.ConnectionFailure)

    def testAPICached(self):
        lom = self.successResultOf(self.conn.getLargeObjectAPI())

        self.assertIdentical(lom, self.lom)
        self.assertEqual(len(self.backend.queries), 1)
