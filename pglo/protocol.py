"""PostgreSQL Protocol implementation

$Id$

THIS SOFTWARE IS UNDER MIT LICENSE.
Copyright (c) 2006 Perillo Manlio (manlio.perillo@gmail.com)

Read LICENSE file for more informations.

Credits: some code is adapted from pgasync
         Copyright (c) 2005 Jamie Turner.  All rights reserved.
"""


from io import BytesIO
from struct import pack, unpack
from hashlib import md5

from zope.interface import implementer

from twisted.python import log
from twisted.internet import protocol, defer

from pglo import ipg


# protocol version
PG_PROTO_VERSION = (3 << 16) | 0

# messages header size
PG_HEADER_SIZE = 5 # 1 byte opcode + 4 byte lenght

InvalidOid = 0

# format codes
FORMAT_TEXT = 0
FORMAT_BINARY = 1

# connection status
CONNECTION_STARTED = 0           # waiting for connection to be made
CONNECTION_MADE = 1              # connection ok; waiting to send
CONNECTION_AWAITING_RESPONSE = 2 # waiting for a response from the
                                 # server
CONNECTION_AUTH_OK = 3           # received authentication; waiting for backend
                                 # start-up finish
CONNECTION_OK = 6                # connection ok; backend ready
CONNECTION_BAD = -1              # connection procedure failed

# transaction status
PGTRANS_IDLE = "I"     # currently idle
PGTRANS_INTRANS = "T"  # idle, in a valid transaction block
PGTRANS_INERROR = "E"  # idle, in a failed transaction block
PGTRANS_ACTIVE = "A"   # a command is in progress (used only in the frontend)
PGTRANS_UNKNOWN = -1   # the connection is bad

# error field codes
PG_DIAG_SEVERITY = "S"
PG_DIAG_SQLSTATE = "C"
PG_DIAG_MESSAGE_PRIMARY = "M"
PG_DIAG_MESSAGE_DETAIL = "D"
PG_DIAG_MESSAGE_HINT = "H"

# result status
PGRES_EMPTY_QUERY = 0      # the string sent to the server was empty
PGRES_COMMAND_OK = 1       # successful completion of a command
                           # returning no data
PGRES_TUPLES_OK = 2        # successful completion of a command
                           # returning data (such as SELECT or SHOW)


# exception class hierarchy
class Error(Exception):
    pass

class PgError(Error):
    """A wrapper for a dictionary with PostgreSQL error data.
    """

    def __init__(self, fields):
        Error.__init__(self, fields.get("M", ""))
        self.fields = fields

    def errorMessage(self):
        """Return the error message associated with this instance.
        """

        return self.fields.get("M", "")

    def errorField(self, field):
        """Return an individual field of an error report, or None if
        the specified field is not included.
        """

        return self.fields.get(field, None)

    def __str__(self):
        return str(self.fields)

class InvalidRequest(Error):
    pass

class AuthenticationError(Error):
    pass

class UnsupportedError(Error):
    pass

class ConnectionFailure(Error):
    """A remote call failed, or the connection is gone.

    The original exception is available as reason (and __cause__).
    """

    def __init__(self, message, reason=None):
        Error.__init__(self, message)
        self.reason = reason

def connectionFailure(message, reason):
    """Build a ConnectionFailure, chained to its cause.
    """

    error = ConnectionFailure(message, reason)
    error.__cause__ = reason
    return error

class UnsupportedOperation(UnsupportedError):
    """The operation requires a feature the server lacks.
    """

class InvalidArgument(Error):
    pass

class ObjectFreed(Error):
    """The large object has been freed, or its descriptor closed.
    """

class IOFailure(Error):
    """A buffered stream operation failed.
    """


class Notification(object):
    """A wrapper for notify data.
    """

    def __init__(self, pid, name, extra=None):
        self.pid = pid
        self.name = name
        self.extra = extra

    def __str__(self):
        return "'%s' notification received " \
            "from backend pid %d" % (self.name, self.pid)


class PgRequest(object):
    """A wrapper for a request to the backend.
    """

    def __init__(self, opcode, payload):
        self.opcode = opcode
        self.payload = payload

        self.deferred = defer.Deferred()



@implementer(ipg.IFastPath)
class PgProtocol(protocol.Protocol):
    """The PostgreSQL protocol implementation, frontend side,
    version 3.0.

    PostgreSQL support multiple request, but we choose to send only
    one request at time, since life is much easier.
    Every handle and stream sharing a connection is thus serialized
    on the wire, in request order.

    Whenever possible, we try to follow the interface of libpq.

    To simplify the interface, all routines pararameters must be of
    the same format: text or binary.
    """

    debug = False

    status = CONNECTION_STARTED
    transactionStatus = PGTRANS_IDLE

    protocolVersion = 3 # we support only this
    serverVersion = None
    backendPID = None


    def __init__(self, addr=None, handler=None, rowConsumer=None):
        """Address is a IAddr address, handler is a IHandler object,
        rowConsumer is a IRowConsumer object.
        """

        self.addr = addr
        self.handler = handler or Handler()
        self.rowConsumer = rowConsumer or RowConsumer()

        self.cancelKey = None
        self.parameterStatus = {}
        self.encoding = "utf-8"

        self.lastResult = None
        self.lastError = {}

        self._queue = [] # we queue requests to the backend
        self._last = None # last request we made

        self._buffer = b""

    def connectionMade(self):
        self.status = CONNECTION_MADE
        self.transactionStatus = PGTRANS_UNKNOWN

        factory = getattr(self, "factory", None)
        if factory is not None:
            factory.clientConnectionMade(self)

    def connectionLost(self, reason=protocol.connectionDone):
        if self.debug:
            log.msg("connection lost:", reason.getErrorMessage())

        self.status = CONNECTION_BAD
        self.transactionStatus = PGTRANS_UNKNOWN

        # nobody will answer pending requests
        pending = self._queue
        if self._last is not None:
            pending.insert(0, self._last)
        self._queue = []
        self._last = None

        for request in pending:
            request.deferred.errback(
                connectionFailure("connection lost", reason.value))

    def dataReceived(self, data):
        """Handle raw data arrived from postgres backend.
        """

        self._buffer = self._buffer + data

        while len(self._buffer) >= PG_HEADER_SIZE:
            # read the message header
            opcode, size = unpack("!cI",
                                  self._buffer[:PG_HEADER_SIZE])

            size = size - 4 # the lenght count includes itself
            if len(self._buffer) < size + PG_HEADER_SIZE:
                break

            payload = self._buffer[PG_HEADER_SIZE:size + PG_HEADER_SIZE]
            self._buffer = self._buffer[size + PG_HEADER_SIZE:]

            self.messageReceived(opcode, payload)

    def sendMessage(self, request):
        """Send the given message to the backend.
        """

        if self.status == CONNECTION_BAD:
            return defer.fail(ConnectionFailure("connection closed"))

        self._queue.append(request)
        if self._last is None:
            self._flush()

        return request.deferred

    def _flush(self):
        # send the next queued request
        if self._queue:
            request = self._queue.pop(0)

            self._last = request
            self.transactionStatus = PGTRANS_ACTIVE

            self._sendMessage(request.opcode, request.payload)

    def _sendMessage(self, opcode, payload):
        # internal helper

        header = pack("!cI", opcode, len(payload) + 4)
        self.transport.write(header + payload)

        if self.debug:
            log.msg("request sent:", opcode)

    def messageReceived(self, opcode, payload):
        """Handle the message.
        """

        if self.debug:
            log.msg("message received:", opcode)

        # dispatch the message using python introspection
        method = getattr(self, "message_" + opcode.decode("latin-1"), None)

        if method is None:
            error = InvalidRequest(opcode)

            if self._last is not None:
                last, self._last = self._last, None
                last.deferred.errback(error)
            else:
                log.err(error)

            # we close the connection, as suggested in the protocol
            # specification
            self.transport.loseConnection()
            return

        method(payload)

    def _parseFields(self, data):
        # helper for ErrorResponse and NoticeResponse
        fields = {}
        for item in data.split(b"\0")[:-2]:
            key, val = item[:1], item[1:]
            fields[key.decode("ascii")] = val.decode(self.encoding, "replace")

        return fields


    #
    # backend messages handling
    #
    # Start-Up
    #
    def message_E(self, data):
        """ErrorResponse: an error occurred.

        For error message types see protocol documentation.
        """

        error = self._parseFields(data)

        self.lastError = error
        log.msg("ERROR:", str(error))

        # check if we failed the authentication
        if self._last is not None and self._last.opcode is None:
            last, self._last = self._last, None
            self.lastError = {}

            last.deferred.errback(PgError(error))
            self.transport.loseConnection()

    def message_N(self, data):
        """NoticeResponse: a notice from the backend.
        """

        self.handler.notice(self._parseFields(data))

    def message_R(self, data):
        """Authentication: authentication request.
        """

        (authtype,) = unpack("!I", data[:4])

        method = getattr(self, "_auth_%s" % authtype, None)
        if method is None:
            error = UnsupportedError("Authentication",  authtype)

            last, self._last = self._last, None
            last.deferred.errback(error)
            self.transport.loseConnection()
            return

        self.status = CONNECTION_AWAITING_RESPONSE

        method(data[4:])

    def _auth_0(self, data=None):
        """AuthenticationOK: we are authenticated.
        """

        self.status = CONNECTION_AUTH_OK

        # these are no more needed
        del self._user
        del self._password

    def _auth_3(self, data=None):
        """AuthenticationCleartextPassword: cleartext password is
        required.
        """

        if self._password is None:
            self._authFailed(AuthenticationError("password is required"))
            return

        self.passwordMessage(self._password)

    def _auth_5(self, salt):
        """AuthenticationMD5Password: an MD5-encrypted password is
        required.

        md5hex(md5hex(password + user) + salt)
        """

        if self._password is None:
            self._authFailed(AuthenticationError("password is required"))
            return

        secret = (self._password + self._user).encode(self.encoding)
        digest = md5(secret).hexdigest().encode("ascii")
        password = "md5" + md5(digest + salt).hexdigest()

        self.passwordMessage(password)

    def _authFailed(self, error):
        last, self._last = self._last, None
        last.deferred.errback(error)

        self.transport.loseConnection()

    def message_K(self, data):
        """BackendKeyData: the backend process id and secret key.
        """

        self.backendPID, self.cancelKey = unpack("!II", data)

    def message_S(self, data):
        """ParameterStatus: backend runtime parameter.
        """

        key, val, _ = data.split(b"\0")
        key = key.decode("ascii")
        self.parameterStatus[key] = val.decode("ascii", "replace")

        if key == "client_encoding":
            self.encoding = encodingName(self.parameterStatus[key])

    def message_Z(self, transactionStatus):
        """ReadyForQuery: the backend is ready for a new query cycle.
        """

        self.transactionStatus = transactionStatus.decode("ascii")

        assert self._last
        deferred = self._last.deferred
        opcode = self._last.opcode
        result = self.lastResult
        self._last = None
        self.lastResult = None

        if self.lastError:
            error = PgError(self.lastError)
            self.lastError = {}
        else:
            error = None
            self.status = CONNECTION_OK

        if opcode is None and error is None:
            # compute the server version, as required by the libpq
            # interface
            version = self.parameterStatus.get("server_version", "")
            self.serverVersion = parseServerVersion(version)
            result = self.parameterStatus

        # send the next request, before running callbacks that can
        # queue new ones
        self._flush()

        if error is not None:
            deferred.errback(error)
        else:
            deferred.callback(result)

    #
    # Simple Query
    #
    def message_C(self, tag):
        """CommandComplete: an SQL command completed normally.

        Note that a simple query can contain more than one command.
        """

        # parse the tag
        tags = tag[:-1].decode("ascii").split(" ") # remove the ending \0
        n = len(tags)

        cmdStatus = tags[0]
        if n == 3:
            oid  = int(tags[1])
            rows = int(tags[2])
        elif n == 2:
            oid = 0
            rows = int(tags[1])
        else:
            oid = 0
            rows = 0

        self.lastResult = self.rowConsumer.complete(cmdStatus, oid, rows)

    def message_T(self, data):
        """RowDescription: a description of row fields.
        """

        self.rowConsumer.description(data)

    def message_D(self, data):
        """DataRow: a row from the result.
        """

        self.rowConsumer.row(data)

    def message_I(self, data):
        """EmptyQueryResponse: an empty query string was recognized.
        """

        self.lastResult = Result()


    #
    # Function Call (aka Fast-Path Interface)
    #
    # Note: this seems to be obsolete, but it is still used (and it is
    # much simpler) for large objects support by libpq
    def message_V(self, data):
        """FunctionCallResponse: the result from a function call.
        """

        (length,) = unpack("!i", data[:4])

        if length == -1:
            # NULL returned
            self.lastResult = None
        else:
            self.lastResult = data[4:4 + length]


    #
    # Asynchronous Operations
    #
    def message_A(self, data):
        """NotificationResponse: an asyncronous notification.
        """

        (pid,) = unpack("!I", data[:4])
        name, extra, _ = data[4:].split(b"\0")

        notify = Notification(pid, name.decode(self.encoding),
                              extra.decode(self.encoding))
        self.handler.notify(notify)


    #
    # frontend messages handling
    #
    def login(self, **kwargs):
        """StartupMessage: login to the PostgreSQL database

        The only required option is user.
        Optional parameters is database; defaults to user name.

        In addition any run-time parameters that can be set at backend
        start time may be listed.
        """

        parameters = kwargs.copy()

        self._user = parameters.get("user", None)
        self._password = parameters.pop("password", None)

        if self._user is None:
            return defer.fail(AuthenticationError("user is required"))

        options = []
        for key, val in parameters.items():
            options.append(key.encode("ascii"))
            options.append(str(val).encode(self.encoding))

        options = b"\0".join(options) + b"\0\0"

        payload = pack("!II", len(options) + 8, PG_PROTO_VERSION) + options

        # the StartupMessage does not require the message type
        self.transport.write(payload)

        self._last = PgRequest(None, payload)
        self.status = CONNECTION_AWAITING_RESPONSE

        return self._last.deferred

    def passwordMessage(self, password):
        """PasswordMessage: send a password response.

        internal method.
        """

        self._sendMessage(b"p", password.encode(self.encoding) + b"\0")

    def execute(self, query):
        """Query: execute a simple query.
        """

        request = PgRequest(b"Q", query.encode(self.encoding) + b"\0")
        return self.sendMessage(request)

    def fn(self, fnid, fformat, *args):
        """FunctionCall: execute a function.

        fformat can be 0 (text) or 1 (binary)

        arguments must be bytes

        In the current implementation all arguments (and the return
        value) must be of the same format.
        """

        prefix = pack("!IHHH", fnid, 1, fformat, len(args))

        data = []
        for a in args:
            data.append(pack("!I", len(a)) + a)

        payload = prefix + b"".join(data) + pack("!H", fformat)
        request = PgRequest(b"F", payload)

        return self.sendMessage(request)

    def finish(self):
        """Terminate: issue a disconnection packet and disconnect.
        """

        if self.status != CONNECTION_BAD:
            self._sendMessage(b"X", b"")
        self.transport.loseConnection()


def parseServerVersion(version):
    """Convert a server_version string to the libpq integer format.

    "9.3.1" is 90301, "16.2 (Debian 16.2-1)" is 160002.
    """

    numbers = []
    for part in version.split()[0].split(".") if version else []:
        digits = ""
        for c in part:
            if not c.isdigit():
                break
            digits += c
        if not digits:
            break
        numbers.append(int(digits))

    if not numbers:
        return 0

    if numbers[0] >= 10:
        # since 10 the version has two parts only
        return numbers[0] * 10000 + (numbers[1] if len(numbers) > 1 else 0)

    numbers = (numbers + [0, 0])[:3]
    major, minor, rev = numbers
    return rev + minor * 100 + major * 10000


def encodingName(pgname):
    """Map a PostgreSQL encoding name to a Python codec name.
    """

    names = {
        "UTF8": "utf-8",
        "UNICODE": "utf-8",
        "SQL_ASCII": "ascii",
        "LATIN1": "latin-1",
        "LATIN9": "iso8859-15",
        "WIN1252": "cp1252",
        }

    return names.get(pgname.upper(), pgname)


class PgFactory(protocol.ClientFactory):
    """A simple factory that manages PgProtocol.
    """

    protocol = PgProtocol

    def buildProtocol(self, addr):
        p = self.protocol(addr)
        p.factory = self
        return p

    def clientConnectionMade(self, protocol):
        pass


#
# Default implementations for required ipg interfaces
#

@implementer(ipg.IHandler)
class Handler(object):

    def notice(self, notice):
        log.msg("Notice:", str(notice))

    def notify(self, notify):
        log.msg("Notification:", str(notify))


@implementer(ipg.IRowDescription)
class RowDescription(object):

    def __init__(self, fname, ftable, ftablecol, ftype, fsize, fmod,
                 fformat):
        self.fname = fname
        self.ftable = ftable
        self.ftablecol = ftablecol
        self.ftype = ftype
        self.fsize = fsize
        self.fmod = fmod
        self.fformat = fformat

@implementer(ipg.IResult)
class Result(object):

    ntuples = None
    nfields = None

    status = PGRES_EMPTY_QUERY # convenient default

    cmdStatus = None
    cmdTuples = None
    oidValue = None

    def __init__(self):
        self.descriptions = []
        self.rows = []

@implementer(ipg.IRowConsumer)
class RowConsumer(object):

    def __init__(self):
        self.result = Result()

    def description(self, data):
        # parse the data
        buf = BytesIO(data)

        (nfields,) = unpack("!H", buf.read(2))

        for i in range(nfields):
            fname = b""
            while True:
                c = buf.read(1)
                if c in (b"\0", b""):
                    break
                fname += c

            (
                ftable, ftablecol, ftype, fsize, fmod, fformat
                ) = unpack("!IhIhih", buf.read(18))

            desc = RowDescription(fname.decode("utf-8"), ftable, ftablecol,
                                  ftype, fsize, fmod, fformat)
            self.result.descriptions.append(desc)

    def row(self, data):
        # parse the data
        buf = BytesIO(data)

        (ncolumns,) = unpack("!H", buf.read(2))

        row = []
        for i in range(ncolumns):
            (length,) = unpack("!i", buf.read(4))
            if length == -1:
                # a NULL value
                row.append(None)
            else:
                row.append(buf.read(length))

        self.result.rows.append(row)

    def complete(self, status, oid, rows):
        self.result.cmdStatus = status
        self.result.cmdTuples = rows
        self.result.oidValue = oid

        self.result.nfields = len(self.result.descriptions)
        self.result.ntuples = len(self.result.rows)

        if self.result.descriptions:
            self.result.status = PGRES_TUPLES_OK
        else:
            self.result.status = PGRES_COMMAND_OK

        # prepare the next cycle
        tmp = self.result
        self.result = Result()

        return tmp
