from datetime import timedelta

import pytest

from bundlebox.errors import AuthFailedError, NotFoundError, StorageFailure, ValidationError, VirusError
from bundlebox.models.archive import ArchiveRecord, SubfileEntry, as_utc, utcnow
from bundlebox.models.audit_log import AuditLog
from bundlebox.models.blob import StoredBlob
from bundlebox.schemas import ArchiveOptions
from bundlebox.services.assembler import Upload, is_allowed_type, normalize_path
from bundlebox.services.packer import unpack
from bundlebox.services.passwords import verify_password

EICAR = rb"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


def three_files():
    return [
        Upload("report/summary.txt", b"summary", "text/plain"),
        Upload("report/data.csv", b"a,b\n1,2\n", "text/csv"),
        Upload("notes.txt", b"# notes", None),
    ]


def stored_members(rec, blob_store, cipher):
    return unpack(cipher.decrypt(blob_store.get(rec.blob_id), rec.key_material))


def test_create_persists_encrypted_archive_and_subfiles(assembler, db_session, blob_store, cipher, token_cache):
    created = assembler.create(three_files(), ArchiveOptions(max_downloads=3, expires_in_hours=24))
    rec = created.archive

    assert rec.id is not None
    assert rec.download_token.startswith("dl_")
    assert created.edit_token.startswith("ed_")
    assert rec.download_count == 0
    assert rec.is_active
    assert rec.password_hash is None
    assert rec.mime_type == "application/zip"
    assert timedelta(hours=23) < as_utc(rec.expiry_at) - utcnow() <= timedelta(hours=24)

    raw = blob_store.get(rec.blob_id)
    assert b"summary" not in raw
    assert stored_members(rec, blob_store, cipher) == {
        "report/summary.txt": b"summary",
        "report/data.csv": b"a,b\n1,2\n",
        "notes.txt": b"# notes",
    }

    rows = db_session.query(SubfileEntry).filter_by(archive_id=rec.id).all()
    assert sorted(r.path for r in rows) == ["notes.txt", "report/data.csv", "report/summary.txt"]
    assert len({r.file_token for r in rows}) == 3
    notes = next(r for r in rows if r.path == "notes.txt")
    assert notes.name == "notes.txt"
    assert notes.mime_type == "text/plain"
    assert notes.extracted is False

    assert token_cache.values[rec.download_token] == rec.id
    assert 0 < token_cache.ttls[rec.download_token] <= 3600

    event = db_session.query(AuditLog).filter_by(action="archive_upload").one()
    assert event.details["files"] == 3
    assert event.details["total_size"] == len(b"summary") + len(b"a,b\n1,2\n") + len(b"# notes")


def test_create_hashes_password(assembler):
    rec = assembler.create(three_files(), ArchiveOptions(password="secret123")).archive

    assert rec.password_hash and rec.password_hash != "secret123"
    assert verify_password("secret123", rec.password_hash)
    assert rec.max_downloads is None
    assert rec.expiry_at is None


def test_create_with_virus_persists_nothing(assembler, db_session):
    uploads = three_files()
    uploads[1] = Upload("report/infected.txt", EICAR, "text/plain")

    with pytest.raises(VirusError) as excinfo:
        assembler.create(uploads, ArchiveOptions())

    assert excinfo.value.filename == "infected.txt"
    assert db_session.query(ArchiveRecord).count() == 0
    assert db_session.query(SubfileEntry).count() == 0
    assert db_session.query(StoredBlob).count() == 0
    assert db_session.query(AuditLog).filter_by(action="virus_detected").count() == 1


@pytest.mark.parametrize(
    "upload, message",
    [
        (Upload("tool.exe", b"MZ", "application/x-msdownload"), "File type not allowed: tool.exe"),
        (Upload("big.txt", b"x" * (1024 * 1024 + 1), "text/plain"), "File size exceeds limit: big.txt"),
        (Upload("../escape.txt", b"x", "text/plain"), "Invalid relative path"),
        (Upload("/abs.txt", b"x", "text/plain"), "Absolute paths are not allowed"),
    ],
)
def test_create_rejects_invalid_files_without_side_effects(assembler, db_session, scanner, upload, message):
    with pytest.raises(ValidationError) as excinfo:
        assembler.create([Upload("fine.txt", b"ok", "text/plain"), upload], ArchiveOptions())

    assert message in excinfo.value.message
    assert scanner.scanned == []
    assert db_session.query(StoredBlob).count() == 0
    assert db_session.query(ArchiveRecord).count() == 0


def test_create_rejects_duplicate_paths(assembler):
    with pytest.raises(ValidationError):
        assembler.create(
            [Upload("a.txt", b"1", "text/plain"), Upload("a.txt", b"2", "text/plain")],
            ArchiveOptions(),
        )


def test_create_rejects_empty_batch(assembler):
    with pytest.raises(ValidationError):
        assembler.create([], ArchiveOptions())


def test_create_surfaces_storage_failure_before_metadata(assembler, db_session, monkeypatch):
    def broken_put(data):
        raise StorageFailure()

    monkeypatch.setattr(assembler.blob_store, "put", broken_put)

    with pytest.raises(StorageFailure):
        assembler.create(three_files(), ArchiveOptions())
    assert db_session.query(ArchiveRecord).count() == 0


def test_update_deletes_and_adds_in_one_request(assembler, db_session, blob_store, cipher):
    created = assembler.create(three_files(), ArchiveOptions())
    rec = created.archive
    old_blob_id = rec.blob_id
    tokens = {s.path: s.file_token for s in rec.subfiles}

    updated = assembler.update(
        rec.id,
        created.edit_token,
        uploads=[Upload("report/extra.txt", b"extra", "text/plain")],
        file_tokens_to_delete=[tokens["report/summary.txt"], tokens["notes.txt"]],
    )

    paths = sorted(s.path for s in updated.subfiles)
    assert paths == ["report/data.csv", "report/extra.txt"]
    # survivors keep their tokens
    assert {s.path: s.file_token for s in updated.subfiles}["report/data.csv"] == tokens["report/data.csv"]
    assert updated.blob_id != old_blob_id
    assert updated.has_pruned_members is False
    assert stored_members(updated, blob_store, cipher) == {
        "report/data.csv": b"a,b\n1,2\n",
        "report/extra.txt": b"extra",
    }
    with pytest.raises(StorageFailure):
        blob_store.get(old_blob_id)

    event = db_session.query(AuditLog).filter_by(action="archive_update").one()
    assert event.details["added"] == ["report/extra.txt"]
    assert sorted(event.details["deleted"]) == sorted([tokens["report/summary.txt"], tokens["notes.txt"]])


def test_update_new_file_replaces_existing_path(assembler, blob_store, cipher):
    created = assembler.create(three_files(), ArchiveOptions())

    updated = assembler.update(
        created.archive.id, created.edit_token, uploads=[Upload("notes.txt", b"# rewritten", "text/plain")]
    )

    assert len(updated.subfiles) == 3
    assert stored_members(updated, blob_store, cipher)["notes.txt"] == b"# rewritten"


def test_update_deletion_only_keeps_blob(assembler, db_session):
    created = assembler.create(three_files(), ArchiveOptions())
    rec = created.archive
    blob_id = rec.blob_id
    token = next(s.file_token for s in rec.subfiles if s.path == "notes.txt")

    updated = assembler.update(rec.id, created.edit_token, file_tokens_to_delete=[token])

    assert updated.blob_id == blob_id
    assert updated.has_pruned_members is True
    assert sorted(s.path for s in updated.subfiles) == ["report/data.csv", "report/summary.txt"]
    assert db_session.query(SubfileEntry).filter_by(file_token=token).first() is None


def test_update_with_wrong_edit_token_changes_nothing(assembler, db_session):
    created = assembler.create(three_files(), ArchiveOptions())
    token = created.archive.subfiles[0].file_token

    with pytest.raises(AuthFailedError):
        assembler.update(created.archive.id, "ed_wrong", file_tokens_to_delete=[token])

    assert db_session.query(SubfileEntry).filter_by(archive_id=created.archive.id).count() == 3


def test_update_with_download_token_as_edit_token_is_rejected(assembler):
    created = assembler.create(three_files(), ArchiveOptions())

    with pytest.raises(AuthFailedError):
        assembler.update(created.archive.id, created.archive.download_token)


def test_update_scans_only_new_files(assembler, scanner, db_session):
    created = assembler.create(three_files(), ArchiveOptions())
    scanner.scanned.clear()
    token = created.archive.subfiles[0].file_token

    with pytest.raises(VirusError):
        assembler.update(
            created.archive.id,
            created.edit_token,
            uploads=[Upload("evil.txt", EICAR, "text/plain")],
            file_tokens_to_delete=[token],
        )

    assert scanner.scanned == [EICAR]
    # the deletion in the same request was not applied
    assert db_session.query(SubfileEntry).filter_by(archive_id=created.archive.id).count() == 3


@pytest.mark.parametrize(
    "paths",
    [
        ["notes.txt", "notes.txt/inner.txt"],
        ["notes.txt/inner.txt", "notes.txt"],
        ["a/b.txt", "a/b.txt/c/d.txt"],
    ],
)
def test_create_rejects_file_and_folder_with_same_path(assembler, db_session, paths):
    uploads = [Upload(path, b"x", "text/plain") for path in paths]

    with pytest.raises(ValidationError) as excinfo:
        assembler.create(uploads, ArchiveOptions())

    assert "conflicts" in excinfo.value.message
    assert db_session.query(ArchiveRecord).count() == 0


def test_update_rejects_file_under_existing_file(assembler, db_session):
    created = assembler.create(three_files(), ArchiveOptions())

    with pytest.raises(ValidationError):
        assembler.update(
            created.archive.id, created.edit_token, uploads=[Upload("notes.txt/inner.txt", b"x", "text/plain")]
        )
    with pytest.raises(ValidationError):
        assembler.update(created.archive.id, created.edit_token, uploads=[Upload("report", b"x", "text/plain")])

    assert db_session.query(SubfileEntry).filter_by(archive_id=created.archive.id).count() == 3


def test_update_can_reuse_path_of_deleted_file_as_folder(assembler, blob_store, cipher):
    created = assembler.create(three_files(), ArchiveOptions())
    token = next(s.file_token for s in created.archive.subfiles if s.path == "notes.txt")

    updated = assembler.update(
        created.archive.id,
        created.edit_token,
        uploads=[Upload("notes.txt/inner.txt", b"inner", "text/plain")],
        file_tokens_to_delete=[token],
    )

    assert "notes.txt/inner.txt" in stored_members(updated, blob_store, cipher)
    assert "notes.txt" not in stored_members(updated, blob_store, cipher)


def test_update_replacement_does_not_count_old_size(assembler, settings):
    # four members that fill the archive size limit exactly
    size = settings.max_archive_size // 4
    uploads = [Upload(f"part{i}.txt", bytes([65 + i]) * size, "text/plain") for i in range(4)]
    created = assembler.create(uploads, ArchiveOptions())

    updated = assembler.update(
        created.archive.id, created.edit_token, uploads=[Upload("part0.txt", b"z" * size, "text/plain")]
    )

    assert len(updated.subfiles) == 4


def test_update_unknown_archive(assembler):
    with pytest.raises(NotFoundError):
        assembler.update(999, "ed_whatever")


def test_delete_deactivates_and_removes_content(assembler, db_session, blob_store, token_cache):
    created = assembler.create(three_files(), ArchiveOptions())
    rec = created.archive
    blob_id = rec.blob_id

    assembler.delete(rec.id, created.edit_token)

    db_session.expire_all()
    stored = db_session.get(ArchiveRecord, rec.id)
    assert stored.is_active is False
    assert db_session.query(SubfileEntry).filter_by(archive_id=rec.id).count() == 0
    assert rec.download_token not in token_cache.values
    with pytest.raises(StorageFailure):
        blob_store.get(blob_id)

    with pytest.raises(NotFoundError):
        assembler.delete(rec.id, created.edit_token)


def test_normalize_path():
    assert normalize_path("dir\\sub\\file.txt") == "dir/sub/file.txt"
    with pytest.raises(ValidationError):
        normalize_path("dir//file.txt")


@pytest.mark.parametrize(
    "name, mime, allowed, expected",
    [
        ("photo.JPG", "image/jpeg", ["jpg"], True),
        ("photo.bin", "image/png", ["image/*"], True),
        ("doc.pdf", "application/pdf", ["application/pdf"], True),
        ("script.sh", "application/x-sh", ["txt", "image/*"], False),
        ("noext", "", ["txt"], False),
    ],
)
def test_is_allowed_type(name, mime, allowed, expected):
    assert is_allowed_type(name, mime, allowed) is expected
