"""
Tests for board mutations: each operation must leave metadata.json and the
task folders in agreement.
"""
import threading

import pytest

from pkg.orderboard.errors import NotFound, StorageError, ValidationError
from pkg.orderboard.files import FileArea, Upload
from pkg.orderboard.operations import BoardService, apply_folder_name, make_task_id
from pkg.orderboard.schema import START_COLUMN_ID
from pkg.orderboard.store import BoardStore


def _column_holders(board, task_id):
    return [c.id for c in board.columns for t in c.task_ids if t == task_id]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestMakeTaskId:

    def test_digits_only(self):
        assert make_task_id(set()).isdigit()

    def test_bumps_past_collisions(self):
        assert make_task_id({"1000", "1001"}, now_ms=1000) == "1002"


class TestApplyFolderName:

    def test_no_folder_leaves_uploads(self):
        uploads = [Upload("a.txt", b"")]
        assert apply_folder_name(uploads, None) is uploads

    def test_prefixes_flat_files(self):
        out = apply_folder_name([Upload("a.txt", b"")], "Order 7")
        assert out[0].relative_path == "Order 7/a.txt"

    def test_keeps_paths_already_rooted(self):
        out = apply_folder_name([Upload("a.txt", b"", relative_path="Order 7/x/a.txt")], "Order 7")
        assert out[0].relative_path == "Order 7/x/a.txt"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# create_task
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCreateTask:

    def test_create_places_task_in_start_column(self, service, file_area):
        result = service.create_task(
            "Acme", "Lee", "2024-01-01", "", [Upload("a.pdf", b"%PDF")]
        )
        task = result.task
        assert task.files == ["a.pdf"]
        assert task.column_id == START_COLUMN_ID
        assert task.folder_path == f"tasks/{task.id}"
        assert result.skipped == []

        board = service.get_board()
        assert board.tasks[task.id].files == ["a.pdf"]
        assert _column_holders(board, task.id) == [START_COLUMN_ID]
        assert (file_area.task_dir(task.id) / "a.pdf").read_bytes() == b"%PDF"

    def test_fields_are_trimmed(self, service):
        task = service.create_task(
            "  Acme ", " Lee", "2024-01-01 ", "  rush order  ", [Upload("a.pdf", b"x")]
        ).task
        assert (task.customer_name, task.representative, task.order_date, task.notes) == (
            "Acme", "Lee", "2024-01-01", "rush order"
        )

    @pytest.mark.parametrize("customer,rep,date,uploads", [
        ("", "Lee", "2024-01-01", [Upload("a.pdf", b"x")]),
        ("Acme", "  ", "2024-01-01", [Upload("a.pdf", b"x")]),
        ("Acme", "Lee", "", [Upload("a.pdf", b"x")]),
        ("Acme", "Lee", "2024-01-01", []),
        ("Acme", "Lee", "2024-01-01", None),
    ])
    def test_missing_fields_rejected(self, service, customer, rep, date, uploads):
        with pytest.raises(ValidationError):
            service.create_task(customer, rep, date, "", uploads)
        assert service.get_board().tasks == {}

    def test_all_paths_unsafe_rejected(self, service, store):
        with pytest.raises(ValidationError):
            service.create_task("Acme", "Lee", "2024-01-01", "",
                                [Upload("x", b"x", relative_path="../..")])
        assert not store.tasks_dir.exists()

    def test_folder_upload_manifest_lists_relative_paths(self, service):
        result = service.create_task(
            "Acme", "Lee", "2024-01-01", "",
            [
                Upload("a.txt", b"a", relative_path="Order/a.txt"),
                Upload("b.txt", b"b", relative_path="Order/docs/b.txt"),
                Upload("c.txt", b"c", relative_path="../.."),
            ],
            folder_name="Order",
        )
        assert result.task.files == ["Order/a.txt", "Order/docs/b.txt"]
        assert result.skipped == ["Order/../.."]

    def test_ids_unique_for_rapid_creates(self, make_task):
        ids = {make_task("a.pdf").id for _ in range(5)}
        assert len(ids) == 5

    def test_missing_start_column_falls_back_to_first(self, tmp_path):
        store = BoardStore(tmp_path / "s", skeleton=[("intake", "Intake"), ("done", "Done")])
        service = BoardService(store, FileArea(store.tasks_dir), start_column="create")
        task = service.create_task("Acme", "Lee", "2024-01-01", "", [Upload("a", b"a")]).task
        board = service.get_board()
        assert task.column_id == "intake"
        assert board.tasks[task.id].column_id == "intake"
        assert _column_holders(board, task.id) == ["intake"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# upload / replace / delete
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestFileMutations:

    def test_upload_appends_in_order(self, service, make_task):
        task = make_task("a.pdf")
        result = service.upload_files(task.id, [Upload("c.txt", b"c"), Upload("b.txt", b"b")])
        assert result.task.files == ["a.pdf", "c.txt", "b.txt"]
        assert service.get_board().tasks[task.id].files == ["a.pdf", "c.txt", "b.txt"]

    def test_upload_non_ascii_name(self, service, make_task, file_area):
        task = make_task("a.pdf")
        result = service.upload_files(task.id, [Upload("报告.txt", "你好".encode())])
        assert result.task.files[-1] == "报告.txt"
        assert (file_area.task_dir(task.id) / "报告.txt").read_text(encoding="utf-8") == "你好"

    def test_upload_same_name_twice_not_duplicated(self, service, make_task, file_area):
        task = make_task("a.pdf")
        service.upload_files(task.id, [Upload("a.pdf", b"v2")])
        assert service.get_board().tasks[task.id].files == ["a.pdf"]
        assert (file_area.task_dir(task.id) / "a.pdf").read_bytes() == b"v2"

    def test_upload_reports_skipped(self, service, make_task):
        task = make_task("a.pdf")
        result = service.upload_files(task.id, [
            Upload("ok.txt", b"ok"),
            Upload("bad", b"x", relative_path=".."),
        ])
        assert result.task.files == ["a.pdf", "ok.txt"]
        assert result.skipped == [".."]

    def test_upload_errors(self, service, make_task):
        task = make_task("a.pdf")
        with pytest.raises(ValidationError):
            service.upload_files(task.id, [])
        with pytest.raises(NotFound):
            service.upload_files("999", [Upload("a.txt", b"a")])

    def test_upload_to_missing_task_writes_nothing(self, service, store):
        with pytest.raises(NotFound):
            service.upload_files("999", [Upload("a.txt", b"a")])
        assert not (store.tasks_dir / "999").exists()

    def test_manifest_order_through_operations(self, service, make_task):
        task = make_task("a", "b", "c")
        assert service.replace_file(task.id, "b", Upload("d", b"d")).files == ["a", "d", "c"]
        assert service.delete_file(task.id, "a").files == ["d", "c"]
        assert service.upload_files(task.id, [Upload("e", b"e")]).task.files == ["d", "c", "e"]
        assert service.get_board().tasks[task.id].files == ["d", "c", "e"]

    def test_replace_unknown_old_name_appends(self, service, make_task, file_area):
        task = make_task("a.pdf")
        updated = service.replace_file(task.id, "ghost.pdf", Upload("new.pdf", b"n"))
        assert updated.files == ["a.pdf", "new.pdf"]
        assert file_area.list_files(task.id) == ["a.pdf", "new.pdf"]

    def test_replace_errors(self, service, make_task):
        task = make_task("a.pdf")
        with pytest.raises(ValidationError):
            service.replace_file(task.id, "", Upload("b", b"b"))
        with pytest.raises(ValidationError):
            service.replace_file(task.id, "a.pdf", None)
        with pytest.raises(NotFound):
            service.replace_file("999", "a.pdf", Upload("b", b"b"))

    def test_delete_missing_file_is_idempotent(self, service, make_task):
        task = make_task("a.pdf", "b.pdf")
        assert service.delete_file(task.id, "zzz.pdf").files == ["a.pdf", "b.pdf"]
        service.delete_file(task.id, "a.pdf")
        assert service.delete_file(task.id, "a.pdf").files == ["b.pdf"]

    def test_delete_listed_but_missing_on_disk(self, service, make_task, file_area):
        task = make_task("a.pdf", "b.pdf")
        (file_area.task_dir(task.id) / "a.pdf").unlink()
        assert service.delete_file(task.id, "a.pdf").files == ["b.pdf"]

    def test_delete_errors(self, service, make_task):
        task = make_task("a.pdf")
        with pytest.raises(ValidationError):
            service.delete_file(task.id, "")
        with pytest.raises(NotFound):
            service.delete_file("999", "a.pdf")
        with pytest.raises(ValidationError):
            service.delete_file(task.id, "../../metadata.json")

    @pytest.mark.parametrize("spelling", ["./a.txt", "a.txt/", "x/../a.txt"])
    def test_delete_alternate_spelling_keeps_manifest_in_step(self, service, make_task,
                                                              file_area, spelling):
        task = make_task("a.txt", "b.txt")
        updated = service.delete_file(task.id, spelling)
        assert updated.files == ["b.txt"]
        assert file_area.list_files(task.id) == ["b.txt"]
        assert service.get_board().tasks[task.id].files == ["b.txt"]

    @pytest.mark.parametrize("spelling", ["./b.txt", "b.txt/"])
    def test_replace_alternate_spelling_keeps_position(self, service, make_task,
                                                       file_area, spelling):
        task = make_task("a.txt", "b.txt", "c.txt")
        updated = service.replace_file(task.id, spelling, Upload("d.txt", b"d"))
        assert updated.files == ["a.txt", "d.txt", "c.txt"]
        assert file_area.list_files(task.id) == ["a.txt", "c.txt", "d.txt"]

    def test_write_failure_raises_storage_error_and_keeps_metadata(self, service, make_task,
                                                                   file_area):
        task = make_task("a.pdf")
        # A directory where the file should go makes the write fail
        (file_area.task_dir(task.id) / "blocked.txt").mkdir()
        with pytest.raises(StorageError):
            service.upload_files(task.id, [Upload("blocked.txt", b"x")])
        assert service.get_board().tasks[task.id].files == ["a.pdf"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# move / replace board / reconcile
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestBoardMutations:

    def test_move_consistency(self, service, make_task):
        task = make_task()
        moved = service.move_task(task.id, "quote")
        assert moved.column_id == "quote"

        board = service.get_board()
        assert board.tasks[task.id].column_id == "quote"
        assert board.get_column("quote").task_ids.count(task.id) == 1
        assert _column_holders(board, task.id) == ["quote"]

    def test_move_appends_to_target(self, service, make_task):
        first, second = make_task(), make_task()
        service.move_task(first.id, "send")
        service.move_task(second.id, "send")
        assert service.get_board().get_column("send").task_ids == [first.id, second.id]

    def test_move_to_same_column_is_noop(self, service, make_task, store):
        task = make_task()
        before = store.meta_path.stat().st_mtime_ns
        assert service.move_task(task.id, START_COLUMN_ID).column_id == START_COLUMN_ID
        assert store.meta_path.stat().st_mtime_ns == before

    def test_move_errors(self, service, make_task):
        task = make_task()
        with pytest.raises(NotFound):
            service.move_task("999", "quote")
        with pytest.raises(ValidationError):
            service.move_task(task.id, "nope")
        with pytest.raises(ValidationError):
            service.move_task(task.id, "")

    def test_replace_board_persists_payload(self, service, store):
        payload = {
            "tasks": {"7": {"id": "7", "columnId": "quote", "customerName": "Acme",
                            "representative": "Lee", "orderDate": "2024-01-01",
                            "notes": "", "folderPath": "tasks/7", "files": []}},
            "columns": [{"id": "quote", "title": "报价", "taskIds": ["7"]}],
        }
        service.replace_board(payload)
        board = service.get_board()
        assert board.tasks["7"].customer_name == "Acme"
        assert board.get_column("quote").task_ids == ["7"]

    @pytest.mark.parametrize("payload", [None, {}, {"tasks": {}}, {"columns": []}, [1, 2]])
    def test_replace_board_rejects_malformed(self, service, store, payload):
        with pytest.raises(ValidationError):
            service.replace_board(payload)
        assert not store.meta_path.exists()

    def test_reconcile_picks_up_disk_changes(self, service, make_task, file_area):
        task = make_task("b.txt", "a.txt")
        task_dir = file_area.task_dir(task.id)
        (task_dir / "b.txt").unlink()
        (task_dir / "z.txt").write_bytes(b"z")
        (task_dir / "c.txt").write_bytes(b"c")

        assert service.reconcile_files(task.id).files == ["a.txt", "c.txt", "z.txt"]
        assert service.get_board().tasks[task.id].files == ["a.txt", "c.txt", "z.txt"]

    def test_reconcile_missing_task(self, service):
        with pytest.raises(NotFound):
            service.reconcile_files("999")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# relist strategy
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestRelistStrategy:

    @pytest.fixture
    def relist_service(self, store, file_area):
        return BoardService(store, file_area, manifest_strategy="relist")

    def test_manifest_tracks_disk(self, relist_service, file_area):
        svc = relist_service
        task = svc.create_task("Acme", "Lee", "2024-01-01", "",
                               [Upload("b.txt", b"b"), Upload("a.txt", b"a")]).task
        assert task.files == ["b.txt", "a.txt"]

        # A file dropped in by hand shows up on the next mutation
        (file_area.task_dir(task.id) / "hand.txt").write_bytes(b"h")
        task = svc.replace_file(task.id, "b.txt", Upload("d.txt", b"d"))
        assert task.files == ["d.txt", "a.txt", "hand.txt"]

        task = svc.delete_file(task.id, "a.txt")
        assert task.files == ["d.txt", "hand.txt"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Concurrency
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_concurrent_uploads_lose_no_manifest_entries(service, make_task):
    task = make_task("base.txt")

    def upload(i):
        service.upload_files(task.id, [Upload(f"f{i}.txt", b"x")])

    threads = [threading.Thread(target=upload, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    files = service.get_board().tasks[task.id].files
    assert files[0] == "base.txt"
    assert sorted(files[1:]) == sorted(f"f{i}.txt" for i in range(16))


def test_archive_uses_customer_label(service, make_task):
    task = make_task("a.txt", customer="华为", representative="李")
    name, data = service.archive(task.id)
    assert name == "华为 - 李.zip"
    assert data[:2] == b"PK"


def test_archive_errors(service, make_task, file_area):
    with pytest.raises(NotFound):
        service.archive("999")
    task = make_task("a.txt")
    service.delete_file(task.id, "a.txt")
    with pytest.raises(NotFound):
        service.archive(task.id)
