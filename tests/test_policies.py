"""Tests for destination policies: live writes, backups and restores."""

import io

import pytest
import urllib3

from riakmirror import (
    BackupError,
    BackupToFile,
    BackupToStream,
    LiveSync,
    Record,
    RestoreFromBackup,
    RestoreFromStream,
    TransferError,
)


class TestLiveSync:

    def test_put_upserts_value(self, dest_endpoint, destination):
        LiveSync(dest_endpoint).accept(Record("default", "users", "a", b"{1}"))
        assert destination.store["default"]["users"]["a"] == b"{1}"
        assert destination.calls_to("PUT") == ["/types/default/buckets/users/keys/a"]

    def test_rewrite_is_not_an_error(self, dest_endpoint, destination):
        policy = LiveSync(dest_endpoint)
        record = Record("default", "users", "a", b"{1}")
        policy.accept(record)
        policy.accept(record)
        assert destination.store == {"default": {"users": {"a": b"{1}"}}}

    @pytest.mark.parametrize("status", [200, 201])
    def test_other_success_codes(self, dest_endpoint, destination, status):
        destination.fail("PUT", "/types/default/buckets/users/keys/a", status)
        LiveSync(dest_endpoint).accept(Record("default", "users", "a", b"{1}"))

    def test_unexpected_status_carries_body(self, dest_endpoint, destination):
        destination.fail(
            "PUT", "/types/default/buckets/users/keys/a", 500, b"backend down"
        )
        with pytest.raises(TransferError, match="500, backend down"):
            LiveSync(dest_endpoint).accept(Record("default", "users", "a", b"{1}"))

    def test_connection_failure(self, dest_endpoint, destination):
        error = urllib3.exceptions.NewConnectionError(None, "Connection refused")
        destination.raise_on("PUT", "/types/default/buckets/users/keys/a", error)
        with pytest.raises(TransferError, match="put key 'a' in 'users'.*refused"):
            LiveSync(dest_endpoint).accept(Record("default", "users", "a", b"{1}"))


class TestBackupToFile:

    def test_writes_under_type_and_bucket(self, tmp_path):
        policy = BackupToFile(tmp_path)
        policy.prepare_bucket_type("default")
        policy.prepare_bucket("default", "users")
        policy.accept(Record("default", "users", "a", b"{1}"))
        assert (tmp_path / "default" / "users" / "a").read_bytes() == b"{1}"

    def test_slash_in_key_stays_one_file(self, tmp_path):
        policy = BackupToFile(tmp_path)
        policy.prepare_bucket_type("default")
        policy.prepare_bucket("default", "users")
        policy.accept(Record("default", "users", "a/b", b"x"))
        assert (tmp_path / "default" / "users" / "a%2Fb").read_bytes() == b"x"

    def test_dot_keys_round_trip(self, tmp_path, dest_endpoint):
        records = [
            Record("default", "users", ".", b"dot"),
            Record("default", "users", "..", b"dotdot"),
            Record("default", "..", "a", b"up"),
        ]
        backup = BackupToFile(tmp_path)
        for record in records:
            backup.prepare_bucket_type(record.bucket_type)
            backup.prepare_bucket(record.bucket_type, record.bucket)
            backup.accept(record)

        assert (tmp_path / "default" / "users" / "%2E").read_bytes() == b"dot"
        assert (tmp_path / "default" / "users" / "%2E%2E").read_bytes() == b"dotdot"
        assert (tmp_path / "default" / "%2E%2E" / "a").read_bytes() == b"up"
        restore = RestoreFromBackup(dest_endpoint, tmp_path)
        assert sorted(restore.records(), key=str) == sorted(records, key=str)

    def test_missing_bucket_dir(self, tmp_path):
        with pytest.raises(BackupError, match="default/users/a"):
            BackupToFile(tmp_path).accept(Record("default", "users", "a", b"{1}"))

    def test_round_trip_through_restore(self, tmp_path, dest_endpoint):
        records = [
            Record("default", "users", "a", b"{1}"),
            Record("maps", "carts", "k/with slash", bytes(range(256))),
            Record("sets", "b%c", "empty", b""),
        ]
        backup = BackupToFile(tmp_path)
        for record in records:
            backup.prepare_bucket_type(record.bucket_type)
            backup.prepare_bucket(record.bucket_type, record.bucket)
            backup.accept(record)

        restore = RestoreFromBackup(dest_endpoint, tmp_path)
        assert sorted(restore.records(), key=str) == sorted(records, key=str)


class TestRestoreFromBackup:

    def test_missing_root(self, tmp_path, dest_endpoint):
        with pytest.raises(BackupError, match="not found"):
            RestoreFromBackup(dest_endpoint, tmp_path / "nope").files()

    def test_shallow_file_rejected(self, tmp_path, dest_endpoint):
        (tmp_path / "default").mkdir()
        (tmp_path / "default" / "stray").write_bytes(b"x")
        restore = RestoreFromBackup(dest_endpoint, tmp_path)
        with pytest.raises(BackupError, match="layout"):
            list(restore.records())

    def test_identity_from_last_three_segments(self, tmp_path, dest_endpoint):
        leaf = tmp_path / "2024" / "default" / "users"
        leaf.mkdir(parents=True)
        (leaf / "a").write_bytes(b"{1}")
        restore = RestoreFromBackup(dest_endpoint, tmp_path)
        assert list(restore.records()) == [Record("default", "users", "a", b"{1}")]


class TestStreams:

    def test_backup_writes_one_line_per_record(self):
        out = io.BytesIO()
        policy = BackupToStream(out)
        policy.accept(Record("default", "users", "a", b"{1}"))
        policy.accept(Record("default", "users", "b", b"{2}"))
        lines = out.getvalue().split(b"\n")
        assert len(lines) == 3 and lines[2] == b""
        assert Record.from_line(lines[1]) == Record("default", "users", "b", b"{2}")

    def test_closed_stream(self):
        out = io.BytesIO()
        out.close()
        with pytest.raises(BackupError):
            BackupToStream(out).accept(Record("default", "users", "a", b"{1}"))

    def test_round_trip_through_restore(self, dest_endpoint):
        records = [
            Record("default", "users", "a", b"{1}"),
            Record("maps", "carts", "k\nnewline", bytes(range(256))),
        ]
        out = io.BytesIO()
        backup = BackupToStream(out)
        for record in records:
            backup.accept(record)

        restore = RestoreFromStream(dest_endpoint, io.BytesIO(out.getvalue()))
        assert list(restore.records()) == records

    def test_long_line_spans_many_reads(self, dest_endpoint):
        record = Record("default", "blobs", "big", b"z" * 200_000)
        raw = io.BytesIO(record.to_line() + b"\n")
        stream = io.BufferedReader(raw, buffer_size=64)
        assert list(RestoreFromStream(dest_endpoint, stream).records()) == [record]

    def test_blank_lines_and_missing_final_newline(self, dest_endpoint):
        line = Record("default", "users", "a", b"{1}").to_line()
        stream = io.BytesIO(b"\n" + line + b"\n\n" + line)
        assert len(list(RestoreFromStream(dest_endpoint, stream).records())) == 2

    def test_bad_line_names_line_number(self, dest_endpoint):
        line = Record("default", "users", "a", b"{1}").to_line()
        stream = io.BytesIO(line + b"\nnot json\n")
        records = RestoreFromStream(dest_endpoint, stream).records()
        assert next(records).key == "a"
        with pytest.raises(BackupError, match="line 2"):
            next(records)
