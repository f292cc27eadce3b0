import time
import unittest
from typing import Callable

from ravendb_subscriptions.infrastructure.entities import User, Company
from ravendb_subscriptions.tests.driver.fake_server import FakeServer, FakeServerDocumentStore, FakeDatabase


class TestBase(unittest.TestCase):
    database_name = "test_db"

    def setUp(self):
        self.server = FakeServer()
        self.server.start()
        self.store = FakeServerDocumentStore(self.server, self.database_name).initialize()
        self.reasonable_amount_of_time = 10

    def tearDown(self):
        self.store.close()
        self.server.stop()

    @property
    def database(self) -> FakeDatabase:
        return self.server.database(self.database_name)

    def store_users(self, count: int, start: int = 0) -> None:
        with self.store.open_session() as session:
            for i in range(start, start + count):
                session.store(User(name=f"user-{i}", age=i), f"users/{i}")
            session.save_changes()

    def store_companies(self, count: int) -> None:
        with self.store.open_session() as session:
            for i in range(count):
                session.store(Company(name=f"company-{i}"), f"companies/{i}")
            session.save_changes()

    def wait_for_value(self, predicate: Callable[[], bool], timeout: float = None) -> bool:
        deadline = time.monotonic() + (timeout or self.reasonable_amount_of_time)
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()
