"""Interface definitions for pglo.

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.
"""

from zope.interface import Interface, Attribute



class IFastPath(Interface):
    """The Fast-Path Interface to server functions.
    """

    def fn(fnid, fformat, *args):
        """Execute the function, given its oid.

        fformat is 0 for text arguments, or 1 for binary.
        Arguments must be bytes.

        Return a deferred, fired with the raw result (None for NULL).
        """

    def execute(query):
        """Execute a simple query.

        Return a deferred, fired with an object implementing IResult.
        """


class IHandler(Interface):
    """Handler for asyncronous messages.
    """

    def notice(notice):
        """Handle a notice.
        """

    def notify(notify):
        """Handle a notification.
        """


class IRowConsumer(Interface):
    """An object that handles row data.

    Note that the data given is the raw data as returned by the
    backend.
    It is the responsibility to this interface to do parsing (thus it
    can be optimized).
    """

    def description(data):
        """Handle the row description.

        This method will be called only if the command returns rows data.
        """

    def row(data):
        """Handle the row data.
        """

    def complete(status, oid, rows):
        """The command has complete, no more data.

        status is the command status flag (usually the name of the command)
        oid is the OID of the inserted row, if available
        rows is the number of rows affected by the command

        Return an object implementing the IResult interface, with
        the result of the query.
        """


class IRowDescription(Interface):
    """A row description.
    """

    fname = Attribute("The field name")
    ftable = Attribute(
        """The OID of the table, if the field can be identified as a
        column, 0 otherwise"""
        )
    ftablecol = Attribute(
        """The attribute number of the column, if the field can be
        identified as a column, 0 otherwise"""
        )
    ftype = Attribute("The object ID of the field's data type")
    fsize = Attribute(
        """"The data type size. Negative values denotes
        variable-width types"""
        )
    fmod = Attribute("The type modifier")
    fformat = Attribute("The format code being used for the field")


class IResult(Interface):
    """The result of a query.
    """

    ntuples = Attribute(
        "The number of rows (tuples) in the query result"
        )
    nfields = Attribute(
        """The number of columns (fields) in each row in the query
        result"""
        )
    descriptions = Attribute(
        "A list of objects implementing IRowDescription"
        )

    status = Attribute("The status of the SQL command")
    cmdStatus = Attribute(
        "The command status tag (usually the name of the command)"
        )
    cmdTuples = Attribute(
        "The number of the rows affected by the SQL command"
        )
    oidValue = Attribute("The OID of the inserted row, if available")

    rows = Attribute(
        """A list of list, containig the rows, as raw bytes (None for
        NULL values)"""
        )


class IFunctionCaller(Interface):
    """Named remote procedures, on top of IFastPath.

    Functions are addressed by name; the name is resolved to the
    function oid once, then cached.
    """

    def addFunction(name, fnid):
        """Register the oid of a server function.
        """

    def lookup(names):
        """Resolve the oids of all the given function names.

        Return a deferred.
        """

    def fastpath(name, *args):
        """Call the named function, with binary arguments.

        Return a deferred, fired with the raw result.
        """

    def getInteger(name, *args):
        """Call a function returning an int4.
        """

    def getLong(name, *args):
        """Call a function returning an int8.
        """

    def getOid(name, *args):
        """Call a function returning an oid.
        """

    def getData(name, *args):
        """Call a function returning a bytea; never returns None.
        """


class ICapabilities(Interface):
    """Server feature flags, as required by the large object API.
    """

    serverVersion = Attribute(
        "The server version, as an integer (e.g. 90300 for 9.3.0)"
        )

    def haveMinimumServerVersion(version):
        """Return True if the server version is at least version.
        """

    def supportsWideAddressing():
        """Return True if the server supports 64 bit large object
        offsets (lo_lseek64, lo_tell64, lo_truncate64).
        """

    def supportsTruncate():
        """Return True if the server supports lo_truncate.
        """


#
# Large Objects support
# (implementation in largeobject.py and blob.py)
#
class ILargeObjectManager(Interface):
    """How to create or open a large object on the database.

    To obtain a large object, do:
    connection = ...

    connection.getLargeObjectAPI().addCallback(
        lambda lom: lom.open(oid))
    """

    def open(oid, mode, commitOnClose=False):
        """Open the large object.

        Return a deferred, fired with an ILargeObject.
        """

    def createLO(mode):
        """Create a new, empty, large object.

        Return a deferred, fired with the new object oid.
        """

    def unlink(oid):
        """Delete the large object.
        """


class ILargeObject(Interface):
    """An open large object descriptor.

    All the methods returns a deferred.
    """

    oid = Attribute("The oid of the large object")
    fd = Attribute("The server side descriptor")
    closed = Attribute("True when the descriptor has been closed")

    def read(length):
        """Read at most length bytes; an empty result means end of
        object.
        """

    def readInto(buf, offset, length):
        """Read at most length bytes into buf; return the count.
        """

    def write(data, offset=0, length=None):
        """Write data to the object.
        """

    def seek(pos, whence=0):
        """Set the current position within the object.
        """

    def seek64(pos, whence=0):
        """Set the current position, using a 64 bit offset.
        """

    def tell():
        """Return the current position within the object.
        """

    def tell64():
        """Return the current position, as a 64 bit offset.
        """

    def size():
        """Return the size of the object.
        """

    def size64():
        """Return the size of the object, as a 64 bit value.
        """

    def truncate(length):
        """Truncate (or zero extend) the object to length bytes.
        """

    def truncate64(length):
        """Truncate, using a 64 bit length.
        """

    def copy():
        """Open another descriptor for the same object.
        """

    def close():
        """Close the descriptor.
        """


class IBlobClob(Interface):
    """A BLOB or CLOB value, stored as a large object.
    """

    oid = Attribute("The oid of the large object")

    def getBytes(pos, length):
        """Return length bytes, starting at the 1-based position pos.
        """

    def setBytes(pos, data, offset=0, length=None):
        """Write data at the 1-based position pos.
        """

    def getBinaryStream(pos=1, length=None):
        """Return a deferred fired with a read stream.
        """

    def setBinaryStream(pos):
        """Return a deferred fired with a write stream.
        """

    def length():
        """Return the length of the object.
        """

    def truncate(length):
        """Truncate the object.
        """

    def position(pattern, start):
        """Return the 1-based position of pattern, or -1.
        """

    def free():
        """Release all the descriptors held by this object.
        """
