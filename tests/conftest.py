import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

from bundlebox.config import Settings
from bundlebox.database import Base, make_engine, make_session_factory
from bundlebox.main import create_app
from bundlebox.services.assembler import ArchiveAssembler
from bundlebox.services.audit import AuditTrail
from bundlebox.services.blob_store import SqlBlobStore
from bundlebox.services.encryptor import ArchiveCipher
from bundlebox.services.gateway import AccessGateway
from bundlebox.services.scanner import ScanGate, ScanResult, ScannerUnavailable, heuristic_scan

# importing the models registers their tables on Base
import bundlebox.models.archive  # noqa: F401
import bundlebox.models.audit_log  # noqa: F401
import bundlebox.models.blob  # noqa: F401


class DictTokenCache:
    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.hits = 0

    def get(self, token):
        value = self.values.get(token)
        if value is not None:
            self.hits += 1
        return value

    def set(self, token, archive_id, ttl):
        if ttl > 0:
            self.values[token] = archive_id
            self.ttls[token] = ttl

    def delete(self, token):
        self.values.pop(token, None)
        self.ttls.pop(token, None)


class FakeScanner:
    """Flags EICAR like clamd would; can be switched to 'unavailable'."""

    def __init__(self):
        self.available = True
        self.scanned = []

    def scan(self, data):
        self.scanned.append(data)
        if not self.available:
            raise ScannerUnavailable("clamd is down")
        result = heuristic_scan(data)
        if not result.clean:
            return ScanResult(clean=False, signature="Win.Test.EICAR_HDB-1")
        return ScanResult(clean=True)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'bundle_box.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        master_key=Fernet.generate_key(),
        max_file_size=1024 * 1024,
        max_archive_size=4 * 1024 * 1024,
    )


@pytest.fixture
def blob_store(session_factory):
    return SqlBlobStore(session_factory)


@pytest.fixture
def token_cache():
    return DictTokenCache()


@pytest.fixture
def scanner():
    return FakeScanner()


@pytest.fixture
def cipher(settings):
    return ArchiveCipher(settings.master_key)


@pytest.fixture
def app(settings, session_factory, blob_store, token_cache, scanner):
    return create_app(
        settings,
        session_factory=session_factory,
        blob_store=blob_store,
        token_cache=token_cache,
        scanner=scanner,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def audit(db_session):
    return AuditTrail(db_session, ip_address="203.0.113.7")


@pytest.fixture
def assembler(db_session, blob_store, token_cache, scanner, cipher, audit, settings):
    return ArchiveAssembler(
        db_session,
        blob_store=blob_store,
        token_cache=token_cache,
        scan_gate=ScanGate(scanner, audit=audit),
        cipher=cipher,
        audit=audit,
        settings=settings,
    )


@pytest.fixture
def gateway(db_session, blob_store, token_cache, cipher, audit):
    return AccessGateway(
        db_session,
        blob_store=blob_store,
        token_cache=token_cache,
        cipher=cipher,
        audit=audit,
    )
