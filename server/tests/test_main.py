from pathlib import Path
import os
import sys
import tempfile
import unittest

SERVER_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(SERVER_DIR))

os.environ["BL_TOKEN"] = "test-token"

from fastapi.testclient import TestClient

import main

AUTH = {"Authorization": "Bearer test-token"}
SCENARIO = b"\x1b[31mERROR\x1b[0m: \x1b[1mfile.rs:3:5\x1b[0m"
WARNING = b"warning: unused variable\n --> src/main.rs:2:9\n"


class ServerTests(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(main.app)
        main._streams.clear()

    def test_health_needs_no_token(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")

    def test_rejects_bad_token(self):
        resp = self.client.post("/render", content=SCENARIO, headers={"Authorization": "Bearer nope"})
        self.assertEqual(resp.status_code, 401)

    def test_render(self):
        resp = self.client.post("/render", content=SCENARIO, headers=AUTH)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["final"])
        self.assertEqual(body["text"], "ERROR: file.rs:3:5")
        self.assertEqual(body["parsed_lines"][0]["runs"][0], {"t": "ERROR", "fg": "red"})

    def test_render_resolves_against_workspace(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            (root / "app" / "src").mkdir(parents=True)
            (root / "app" / "Cargo.toml").write_text("[package]\n", encoding="utf-8")
            (root / "app" / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
            resp = self.client.post(
                "/render",
                content=WARNING,
                headers=AUTH,
                params={"workspace_root": str(root)},
            )
        diag = resp.json()["diagnostics"][0]
        self.assertEqual(diag["severity"], "warning")
        self.assertEqual(diag["resolution"]["status"], "resolved")
        self.assertEqual(diag["path"], str(root / "app" / "src" / "main.rs"))

    def test_render_rejects_relative_workspace_root(self):
        resp = self.client.post(
            "/render",
            content=WARNING,
            headers=AUTH,
            params={"workspace_root": "relative/dir"},
        )
        self.assertEqual(resp.status_code, 400)

    def test_stream_with_discovery(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            (root / "app" / "src").mkdir(parents=True)
            (root / "app" / "Cargo.toml").write_text("[package]\n", encoding="utf-8")
            (root / "app" / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
            created = self.client.post(
                "/streams",
                json={"workspace_root": str(root), "discover": True},
                headers=AUTH,
            )
            self.assertEqual(created.json()["state"], "streaming")
            stream_id = created.json()["id"]
            self.client.post(f"/streams/{stream_id}/chunks", content=WARNING, headers=AUTH)
            done = self.client.post(f"/streams/{stream_id}/finish", headers=AUTH).json()
        self.assertEqual(done["diagnostics"][0]["resolution"]["status"], "resolved")

    def test_stream_lifecycle(self):
        created = self.client.post("/streams", json={}, headers=AUTH)
        self.assertEqual(created.status_code, 200)
        stream_id = created.json()["id"]

        fed = self.client.post(f"/streams/{stream_id}/chunks", content=SCENARIO[:9], headers=AUTH)
        self.assertEqual(fed.json()["state"], "streaming")
        self.client.post(f"/streams/{stream_id}/chunks", content=SCENARIO[9:], headers=AUTH)

        partial = self.client.get(f"/streams/{stream_id}", headers=AUTH).json()
        self.assertFalse(partial["final"])

        done = self.client.post(f"/streams/{stream_id}/finish", headers=AUTH).json()
        self.assertTrue(done["final"])
        self.assertEqual(done["text"], "ERROR: file.rs:3:5")

        again = self.client.post(f"/streams/{stream_id}/chunks", content=b"late", headers=AUTH)
        self.assertEqual(again.status_code, 409)

        self.assertEqual(self.client.delete(f"/streams/{stream_id}", headers=AUTH).status_code, 200)
        self.assertEqual(self.client.get(f"/streams/{stream_id}", headers=AUTH).status_code, 404)

    def test_stream_rejects_relative_roots(self):
        resp = self.client.post("/streams", json={"workspace_root": "relative/dir"}, headers=AUTH)
        self.assertEqual(resp.status_code, 422)

    def test_stream_limit(self):
        for _ in range(main.MAX_STREAMS):
            self.assertEqual(self.client.post("/streams", json={}, headers=AUTH).status_code, 200)
        self.assertEqual(self.client.post("/streams", json={}, headers=AUTH).status_code, 429)


if __name__ == "__main__":
    unittest.main()
