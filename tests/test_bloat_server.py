import threading
import time

import pytest
from fastapi.testclient import TestClient

from bloatscan.bloat_server import TERMINAL_STATES, JobManager, create_app
from bloatscan.scan_errors import InvalidConfigError, ScanCancelledError
from bloatscan.scan_progress import ScanProgress
from conftest import MB, make_file


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as c:
        yield c


def _wait_for_job(client, job_id, timeout=30.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/v1/jobs/{job_id}").json()
        if body["data"]["status"] in TERMINAL_STATES:
            return body["data"]
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["data"]["alive"] is True


def test_disks(client):
    body = client.get("/api/v1/disks").json()
    assert body["status"] == "ok"
    assert body["data"]
    assert {"mount_point", "total_bytes", "used_bytes", "free_bytes"} <= set(body["data"][0])


def test_bloat_scan_job(client, tmp_path):
    root = tmp_path / "root"
    make_file(root / "a.bin", size=5 * MB)
    make_file(root / "b.bin", size=15 * MB)
    make_file(root / "c.bin", size=2 * MB)

    resp = client.post("/api/v1/scans/bloat", json={"root": str(root), "min_size": "10MB"})
    assert resp.status_code == 200
    job = _wait_for_job(client, resp.json()["data"]["job_id"])

    assert job["status"] == "completed"
    flagged = job["result"]["flagged"]
    assert [(f["path"], f["kind"]) for f in flagged] == [(str(root / "b.bin"), "file")]

    events = client.get(f"/api/v1/jobs/{job['job_id']}/events").json()["data"]["events"]
    assert events[-1]["phase"] == "walking_done"


def test_bloat_scan_rejects_missing_root(client, tmp_path):
    resp = client.post("/api/v1/scans/bloat", json={"root": str(tmp_path / "missing")})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_PATH"


def test_bloat_scan_rejects_bad_size(client, tmp_path):
    resp = client.post("/api/v1/scans/bloat", json={"root": str(tmp_path), "min_size": "huge"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_CONFIG"


def test_duplicate_scan_job(client, tree):
    resp = client.post("/api/v1/scans/duplicates", json={"root": str(tree)})
    job = _wait_for_job(client, resp.json()["data"]["job_id"])
    assert job["status"] == "completed"
    assert job["result"]["group_count"] == 1
    assert sorted(job["result"]["groups"][0]["member_paths"]) == sorted(
        [str(tree / "data" / "copy_a.txt"), str(tree / "backup" / "copy_b.txt")]
    )


def test_project_scan_history_and_diff(client, tree):
    first = _wait_for_job(client, client.post("/api/v1/projects/scan", json={"root": str(tree)}).json()["data"]["job_id"])
    make_file(tree / "added.txt", content=b"fresh")
    second = _wait_for_job(client, client.post("/api/v1/projects/scan", json={"root": str(tree)}).json()["data"]["job_id"])
    assert first["status"] == second["status"] == "completed"

    project_id = first["result"]["project"]["project_id"]
    projects = client.get("/api/v1/projects").json()["data"]
    assert [p["project_id"] for p in projects] == [project_id]

    snaps = client.get(f"/api/v1/projects/{project_id}/snapshots").json()["data"]
    assert len(snaps) == 2
    from_id, to_id = snaps[0]["snapshot_id"], snaps[1]["snapshot_id"]

    delta = client.get("/api/v1/diff", params={"from_id": from_id, "to_id": to_id}).json()["data"]
    assert delta["added_paths"] == [str(tree / "added.txt")]

    snap = client.get(f"/api/v1/snapshots/{to_id}", params={"include_entries": True}).json()["data"]
    assert str(tree / "added.txt") in snap["entries"]

    assert client.get(f"/api/v1/projects/{project_id}/alerts").status_code == 200

    pruned = client.post(f"/api/v1/projects/{project_id}/prune", json={"keep_last": 1}).json()["data"]
    assert pruned["removed_snapshot_ids"] == [from_id]


def test_project_scan_rejects_unknown_threshold(client, tree):
    resp = client.post("/api/v1/projects/scan", json={"root": str(tree), "thresholds": {"nonsense": 1}})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_CONFIG"


def test_missing_resources_return_404(client):
    assert client.get("/api/v1/jobs/nope").status_code == 404
    assert client.get("/api/v1/snapshots/999999").json()["error"]["code"] == "NOT_FOUND"
    assert client.get("/api/v1/projects/nope/snapshots").status_code == 404


def test_cleanup_requires_paths_and_confirmation(client, tmp_path):
    resp = client.post("/api/v1/cleanup", json={"paths": []})
    assert resp.json()["error"]["code"] == "NO_PATHS"

    victim = make_file(tmp_path / "victim.txt", content=b"x")
    resp = client.post("/api/v1/cleanup", json={"paths": [str(victim)], "dry_run": False})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "CONFIRMATION_REQUIRED"
    assert victim.exists()


def test_cleanup_and_restore(client, tmp_path):
    victim = make_file(tmp_path / "work" / "victim.txt", content=b"x")
    resp = client.post(
        "/api/v1/cleanup",
        json={"paths": [str(victim), str(tmp_path / "missing")], "dry_run": False, "confirm": True},
    )
    job = _wait_for_job(client, resp.json()["data"]["job_id"])
    result = job["result"]
    assert result["deleted"] == [str(victim)]
    assert result["skipped"] == [str(tmp_path / "missing")]
    assert result["errors"] == []
    assert not victim.exists()

    actions = client.get("/api/v1/cleanup/actions").json()["data"]
    assert [a["action_id"] for a in actions] == [result["action_id"]]

    restored = client.post("/api/v1/cleanup/restore", json={"action_id": result["action_id"]}).json()["data"]
    assert restored["restored"] == 1
    assert victim.exists()


def test_websocket_streams_until_terminal(client, tree):
    job_id = client.post("/api/v1/scans/duplicates", json={"root": str(tree)}).json()["data"]["job_id"]
    with client.websocket_connect(f"/api/v1/ws/jobs/{job_id}") as ws:
        assert ws.receive_json()["event"] == "connected"
        snapshot = ws.receive_json()
        assert snapshot["event"] == "snapshot"
        if snapshot["job"]["status"] not in TERMINAL_STATES:
            while True:
                msg = ws.receive_json()
                if msg["event"] in TERMINAL_STATES:
                    break
    assert _wait_for_job(client, job_id)["status"] == "completed"


# ------------------------------ job manager --------------------------------- #


def _wait_status(manager, job_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = manager.get(job_id)
        if job.status in TERMINAL_STATES:
            return job
        time.sleep(0.01)
    raise AssertionError("job did not finish")


def test_job_manager_cancellation():
    manager = JobManager(max_workers=1)
    started = threading.Event()

    def func(progress, token):
        progress(ScanProgress(1, "/somewhere", "walking"))
        started.set()
        while not token.cancelled:
            time.sleep(0.01)
        token.raise_if_cancelled("test job")
        return {}

    job = manager.create_job("test")
    manager.submit(job, func)
    assert started.wait(5)
    assert manager.cancel(job.job_id) is True

    done = _wait_status(manager, job.job_id)
    assert done.status == "cancelled"
    assert done.error["code"] == ScanCancelledError.code
    assert manager.cancel(job.job_id) is False
    assert manager.channel(job.job_id).drain()[0].current_path == "/somewhere"
    manager.shutdown()


def test_job_manager_failure_is_captured():
    manager = JobManager(max_workers=1)

    def func(progress, token):
        raise RuntimeError("boom")

    job = manager.create_job("test")
    manager.submit(job, func)
    done = _wait_status(manager, job.job_id)
    assert done.status == "failed"
    assert done.error["code"] == "JOB_EXECUTION_ERROR"
    manager.shutdown()


def test_job_manager_evicts_oldest_finished_jobs():
    manager = JobManager(max_workers=1, max_finished_jobs=2)

    def func(progress, token):
        progress(ScanProgress(1, "/x", "walking"))
        return {"ok": True}

    ids = []
    for _ in range(3):
        job = manager.create_job("test")
        manager.submit(job, func)
        _wait_status(manager, job.job_id)
        ids.append(job.job_id)

    assert manager.get(ids[0]) is None
    assert manager.channel(ids[0]) is None
    assert manager.cancel(ids[0]) is False
    assert [manager.get(i).status for i in ids[1:]] == ["completed", "completed"]
    manager.shutdown()


def test_job_manager_rejects_zero_retention():
    with pytest.raises(InvalidConfigError):
        JobManager(max_workers=1, max_finished_jobs=0)
