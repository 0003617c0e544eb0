import pandas as pd
import pytest

from core.exceptions import StorageError
from dataflow.storage import ParquetStorage


def test_write_then_read(storage, sales_frame):
    key = storage.write(sales_frame)

    assert key.endswith(".parquet")
    assert storage.read(key).equals(sales_frame)
    assert len(storage.read(key, limit=2)) == 2


def test_describe(storage, sales_frame):
    key = storage.write(sales_frame)

    description = storage.describe(key)

    assert description["row_count"] == 4
    assert [(c["name"], c["type"]) for c in description["schema"]] == [
        ("id", "INTEGER"),
        ("region", "TEXT"),
        ("amount", "DECIMAL"),
    ]


def test_every_write_gets_a_fresh_key(storage, sales_frame):
    assert storage.write(sales_frame) != storage.write(sales_frame)


def test_uncommitted_writer_leaves_nothing(storage, sales_frame):
    with pytest.raises(RuntimeError):
        with storage.open_writer() as writer:
            writer.write_frame(sales_frame)
            raise RuntimeError("step failed")

    assert list(storage.root.iterdir()) == []


def test_commit_without_rows_fails(storage):
    with storage.open_writer() as writer:
        with pytest.raises(StorageError):
            writer.commit()


def test_missing_file(storage):
    with pytest.raises(StorageError):
        storage.read("missing.parquet")


def test_delete(storage, sales_frame):
    key = storage.write(sales_frame)
    storage.delete(key)

    assert not storage.path_for(key).exists()
    # deleting twice is harmless
    storage.delete(key)


def test_root_is_created(tmp_path):
    storage = ParquetStorage(str(tmp_path / "nested" / "datasets"))
    assert storage.root.is_dir()
    key = storage.write(pd.DataFrame({"a": [1]}))
    assert storage.path_for(key).parent == storage.root
