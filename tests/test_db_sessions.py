from __future__ import annotations

import unittest

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from app.db import chunk_transaction, read_session
from app.errors import TransientStoreError


def _operational_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))


class _FakeTransaction:
    def __init__(self, session: _FakeSession):
        self._session = session

    def __enter__(self):  # type: ignore[no-untyped-def]
        self._session.began = True
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        if exc_type is None:
            self._session.committed = True
        else:
            self._session.rolled_back = True
        return False


class _FakeSession:
    def __init__(self, *, begin_error: Exception | None = None):
        self._begin_error = begin_error
        self.began = False
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        self.closed = True
        return False

    def begin(self):  # type: ignore[no-untyped-def]
        if self._begin_error is not None:
            raise self._begin_error
        return _FakeTransaction(self)


class _FakeSessionFactory:
    def __init__(self, *, open_error: Exception | None = None, begin_error: Exception | None = None):
        self._open_error = open_error
        self._begin_error = begin_error
        self.sessions: list[_FakeSession] = []

    def __call__(self) -> _FakeSession:
        if self._open_error is not None:
            raise self._open_error
        session = _FakeSession(begin_error=self._begin_error)
        self.sessions.append(session)
        return session


class ReadSessionTests(unittest.TestCase):
    def test_operational_error_becomes_transient_and_session_is_closed(self) -> None:
        factory = _FakeSessionFactory()
        original = _operational_error()

        with self.assertRaises(TransientStoreError) as ctx:
            with read_session(factory):
                raise original

        self.assertEqual(ctx.exception.message, "store read failed: OperationalError")
        self.assertIs(ctx.exception.__cause__, original)
        self.assertTrue(factory.sessions[0].closed)

    def test_pool_timeout_becomes_transient(self) -> None:
        factory = _FakeSessionFactory()

        with self.assertRaises(TransientStoreError) as ctx:
            with read_session(factory):
                raise PoolTimeoutError("QueuePool limit of size 10 overflow 0 reached")

        self.assertEqual(ctx.exception.message, "store read failed: TimeoutError")
        self.assertTrue(factory.sessions[0].closed)

    def test_failure_to_open_session_becomes_transient(self) -> None:
        factory = _FakeSessionFactory(open_error=_operational_error())

        with self.assertRaises(TransientStoreError):
            with read_session(factory):
                self.fail("block must not run without a session")

    def test_other_errors_pass_through(self) -> None:
        factory = _FakeSessionFactory()

        with self.assertRaises(ValueError):
            with read_session(factory):
                raise ValueError("bad row")
        self.assertTrue(factory.sessions[0].closed)


class ChunkTransactionTests(unittest.TestCase):
    def test_success_commits_and_closes(self) -> None:
        factory = _FakeSessionFactory()

        with chunk_transaction(factory) as session:
            self.assertTrue(session.began)

        session = factory.sessions[0]
        self.assertTrue(session.committed)
        self.assertFalse(session.rolled_back)
        self.assertTrue(session.closed)

    def test_operational_error_rolls_back_and_becomes_transient(self) -> None:
        factory = _FakeSessionFactory()

        with self.assertRaises(TransientStoreError) as ctx:
            with chunk_transaction(factory):
                raise _operational_error()

        self.assertEqual(ctx.exception.message, "chunk commit failed: OperationalError")
        session = factory.sessions[0]
        self.assertTrue(session.rolled_back)
        self.assertFalse(session.committed)
        self.assertTrue(session.closed)

    def test_failure_to_begin_becomes_transient_and_session_is_closed(self) -> None:
        factory = _FakeSessionFactory(begin_error=PoolTimeoutError("QueuePool limit of size 10 overflow 0 reached"))

        with self.assertRaises(TransientStoreError) as ctx:
            with chunk_transaction(factory):
                self.fail("block must not run without a transaction")

        self.assertEqual(ctx.exception.message, "chunk commit failed: TimeoutError")
        self.assertTrue(factory.sessions[0].closed)

    def test_integrity_error_rolls_back_untranslated(self) -> None:
        factory = _FakeSessionFactory()

        with self.assertRaises(IntegrityError):
            with chunk_transaction(factory):
                raise IntegrityError("INSERT", {}, Exception("duplicate key value"))

        session = factory.sessions[0]
        self.assertTrue(session.rolled_back)
        self.assertTrue(session.closed)


if __name__ == "__main__":
    unittest.main()
