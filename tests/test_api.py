"""API tests for mesh build jobs, statistics and export."""

import pytest
from fastapi.testclient import TestClient

from py_heightmesh.api import main
from py_heightmesh.api.main import app

from conftest import write_png


class TestMeshAPI:
    """Exercise the HTTP endpoints against real PNG heightmaps."""

    @pytest.fixture
    def client(self):
        with TestClient(app) as client:
            yield client
        main.jobs.clear()

    @pytest.fixture
    def heightmaps(self, tmp_path):
        return {
            "low": write_png(tmp_path / "low.png", [[0, 0, 0, 0]] * 3),
            "high": write_png(tmp_path / "high.png", [[255, 255, 255, 255]] * 3),
            "small": write_png(tmp_path / "small.png", [[0, 0], [0, 0]]),
        }

    def build(self, client, **body):
        response = client.post("/meshes/build", json=body)
        assert response.status_code == 200
        job = client.get(f"/jobs/{response.json()['job_id']}").json()
        return job

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["cache_entries"] == 0

    def test_build_smooth_mesh(self, client, heightmaps):
        job = self.build(client, heightmaps=[heightmaps["low"], heightmaps["high"]], max_height=10)

        assert job["status"] == "completed"
        assert job["progress_percent"] == 100

        mesh = client.get(f"/meshes/{job['mesh_id']}").json()
        assert mesh["width"] == 4
        assert mesh["height"] == 3
        assert mesh["vertex_count"] == 12
        assert mesh["face_count"] == 2 * 3 * 2
        assert mesh["morph_target_count"] == 4
        assert mesh["geometry_style"] == "smooth"
        assert mesh["cached"] is False

    def test_identical_builds_share_geometry(self, client, heightmaps):
        first = self.build(client, heightmaps=[heightmaps["low"]], geometry_style="float")
        second = self.build(client, heightmaps=[heightmaps["low"]], geometry_style="float")

        first_mesh = client.get(f"/meshes/{first['mesh_id']}").json()
        second_mesh = client.get(f"/meshes/{second['mesh_id']}").json()
        assert second_mesh["cached"] is True
        assert first_mesh["cache_key"] == second_mesh["cache_key"]
        assert client.get("/health").json()["cache_entries"] == 1

        client.delete(f"/meshes/{first['mesh_id']}")
        assert client.get("/health").json()["cache_entries"] == 1
        client.delete(f"/meshes/{second['mesh_id']}")
        assert client.get("/health").json()["cache_entries"] == 0

    def test_list_meshes(self, client, heightmaps):
        job = self.build(client, heightmaps=[heightmaps["low"]])
        ids = [mesh["id"] for mesh in client.get("/meshes").json()]
        assert job["mesh_id"] in ids

    def test_export_glb(self, client, heightmaps):
        job = self.build(client, heightmaps=[heightmaps["low"], heightmaps["high"]])

        response = client.get(f"/meshes/{job['mesh_id']}/export", params={"target": 1})
        assert response.status_code == 200
        assert response.headers["content-type"] == "model/gltf-binary"
        assert response.content[:4] == b"glTF"

    def test_export_invalid_target(self, client, heightmaps):
        job = self.build(client, heightmaps=[heightmaps["low"]])
        response = client.get(f"/meshes/{job['mesh_id']}/export", params={"target": 4})
        assert response.status_code == 400

    def test_export_invalid_type(self, client, heightmaps):
        job = self.build(client, heightmaps=[heightmaps["low"]])
        response = client.get(f"/meshes/{job['mesh_id']}/export", params={"file_type": "fbx"})
        assert response.status_code == 400

    def test_missing_heightmap_fails_job(self, client, tmp_path):
        job = self.build(client, heightmaps=[str(tmp_path / "nope.png")])

        assert job["status"] == "failed"
        assert "nope.png" in job["error_message"]
        assert job["mesh_id"] is None

    def test_size_mismatch_fails_job(self, client, heightmaps):
        job = self.build(client, heightmaps=[heightmaps["low"], heightmaps["small"]])

        assert job["status"] == "failed"
        assert "same size" in job["error_message"]
        assert client.get("/health").json()["cache_entries"] == 0

    def test_block_with_morph_targets_fails_job(self, client, heightmaps):
        job = self.build(client, heightmaps=[heightmaps["low"], heightmaps["high"]],
                         geometry_style="block")

        assert job["status"] == "failed"
        assert "block" in job["error_message"]

    @pytest.mark.parametrize("body", [
        {"heightmaps": []},
        {"heightmaps": ["a", "b", "c", "d", "e"]},
        {"heightmaps": [""]},
        {"heightmaps": ["a"], "geometry_style": "cube"},
        {"heightmaps": ["a"], "max_height": -5},
    ])
    def test_invalid_request(self, client, body):
        assert client.post("/meshes/build", json=body).status_code == 422

    def test_unknown_ids(self, client):
        assert client.get("/jobs/unknown").status_code == 404
        assert client.get("/meshes/unknown").status_code == 404
        assert client.delete("/meshes/unknown").status_code == 404
