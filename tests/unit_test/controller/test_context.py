from unittest.mock import patch

import pytest

from kubeloop.controller.context import STATUS_WRITE_ATTEMPTS, patch_status
from kubeloop.exceptions import ConflictError


class TestPatchStatus:
    """Read-modify-write of an object's status"""

    def test_writes_changed_status(self, store, make_object):
        store.put(make_object(name="a"))
        obj = store.get("Pod", "default", "a")
        assert patch_status(store, obj, lambda status: {**status, "phase": "Running"})
        assert store.get("Pod", "default", "a").status == {"phase": "Running"}

    def test_unchanged_status_is_not_written(self, store, make_object):
        store.put(make_object(name="a"))
        revision = store.revision
        obj = store.get("Pod", "default", "a")
        assert not patch_status(store, obj, lambda status: status)
        assert store.revision == revision

    def test_concurrent_writer_is_merged_on_retry(self, store, make_object):
        store.put(make_object(name="a"))
        obj = store.get("Pod", "default", "a")
        calls = []

        def mutate(status):
            if not calls:
                # Another writer lands between our read and our write
                store.put_status("Pod", "default", "a", {"ready": True}, expected_version=obj.resource_version)
            calls.append(dict(status))
            return {**status, "phase": "Running"}

        assert patch_status(store, obj, mutate)
        assert len(calls) == 2
        assert store.get("Pod", "default", "a").status == {"ready": True, "phase": "Running"}

    def test_gives_up_after_repeated_conflicts(self, store, make_object):
        store.put(make_object(name="a"))
        obj = store.get("Pod", "default", "a")
        with patch.object(store, "put_status", side_effect=ConflictError("stale")) as put_status:
            with pytest.raises(ConflictError):
                patch_status(store, obj, lambda status: {**status, "phase": "Running"})
        assert put_status.call_count == STATUS_WRITE_ATTEMPTS

    def test_deleted_object_is_skipped(self, store, make_object):
        store.put(make_object(name="a"))
        obj = store.get("Pod", "default", "a")
        store.delete("Pod", "default", "a")
        assert not patch_status(store, obj, lambda status: {**status, "phase": "Running"})
