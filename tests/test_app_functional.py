import importlib
import io
import os
import sys
import tempfile
import unittest
from dataclasses import replace
from pathlib import Path
from unittest import mock
from urllib.parse import quote

FILEDROP_MODULES = [
    "filedrop.app",
    "filedrop.storage",
    "filedrop.identity",
    "filedrop.translations",
    "filedrop.logging_utils",
    "filedrop.config",
    "filedrop",
]
ENV_KEYS = [
    "FILEDROP_STORAGE_ROOT",
    "FILEDROP_UPLOADS_DIR",
    "FILEDROP_LOGS_DIR",
    "FILEDROP_DATA_DIR",
    "FILEDROP_CLEANUP_ENABLED",
    "FILEDROP_TENANT_SCHEME",
    "FILEDROP_MAX_UPLOAD_SIZE_MB",
    "SECRET_KEY",
]
JSON = {"Accept": "application/json"}


class FileDropAppIntegrationTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name).resolve()
        os.environ["FILEDROP_STORAGE_ROOT"] = str(root)
        os.environ["FILEDROP_UPLOADS_DIR"] = str(root / "uploads")
        os.environ["FILEDROP_LOGS_DIR"] = str(root / "logs")
        os.environ["FILEDROP_DATA_DIR"] = str(root / "data")
        os.environ["FILEDROP_CLEANUP_ENABLED"] = "false"
        os.environ["SECRET_KEY"] = "test-secret"
        self._reload_app()
        self.app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
        self.app_module.limiter.enabled = False
        self.client = self.app.test_client()

    def tearDown(self):
        self.storage_dir.cleanup()
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        for module in FILEDROP_MODULES:
            sys.modules.pop(module, None)

    def _reload_app(self):
        for module in FILEDROP_MODULES:
            if module in sys.modules:
                del sys.modules[module]

        app_module = importlib.import_module("filedrop.app")  # noqa: WPS433
        storage = importlib.import_module("filedrop.storage")  # noqa: WPS433
        identity = importlib.import_module("filedrop.identity")  # noqa: WPS433

        self.app = app_module.app
        self.app_module = app_module
        self.storage = storage
        self.identity = identity

    def login(self, client=None, username="alice", password="secret1"):
        client = client or self.client
        response = client.post(
            "/auth/login", data={"username": username, "password": password}
        )
        self.assertEqual(response.status_code, 302)
        return self.identity.derive_tenant_key(username, password)

    def upload(self, files, paths=None, client=None, headers=JSON):
        client = client or self.client
        data = {"uploadedFiles": [(io.BytesIO(content), name) for name, content in files]}
        if paths is not None:
            data["paths"] = paths
        return client.post(
            "/upload", data=data, content_type="multipart/form-data", headers=headers
        )

    def tenant_dir(self, tenant_key):
        return self.storage.UPLOADS_DIR / tenant_key

    def test_health_endpoint(self):
        response = self.client.get("/health")
        self.assertIn(response.status_code, (200, 503))
        payload = response.get_json()
        self.assertIn("checks", payload)
        self.assertEqual(payload["checks"]["uploads_writable"], "ok")
        self.assertFalse(payload["checks"]["scheduler_running"])

    def test_index_requires_login(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 302)
        self.assertIn("/auth/login", response.headers["Location"])

        api_response = self.client.get("/api/files", headers=JSON)
        self.assertEqual(api_response.status_code, 401)

        upload_response = self.upload([("x.txt", b"x")])
        self.assertEqual(upload_response.status_code, 401)
        self.assertEqual(os.listdir(self.storage.UPLOADS_DIR), [".partial"])

    def test_login_rejects_malformed_credentials(self):
        response = self.client.post(
            "/auth/login", data={"username": "a", "password": "short"}
        )
        self.assertEqual(response.status_code, 400)
        with self.client.session_transaction() as session:
            self.assertNotIn("tenant_key", session)

    def test_login_returns_to_requested_page(self):
        self.client.get("/api/files")
        response = self.client.post(
            "/auth/login", data={"username": "alice", "password": "secret1"}
        )
        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.headers["Location"].endswith("/api/files"))

    def test_index_shows_tenant_key_and_empty_state(self):
        tenant_key = self.login()
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        html = response.data.decode()
        self.assertIn(tenant_key, html)
        self.assertIn("No files uploaded yet.", html)

    def test_chinese_interface(self):
        response = self.client.get("/auth/login", headers={"Accept-Language": "zh-CN,zh;q=0.9"})
        self.assertEqual(response.status_code, 200)
        self.assertIn("登录", response.data.decode())

    def test_nested_upload_and_listing(self):
        tenant_key = self.login()
        response = self.upload(
            [("x.txt", b"x"), ("y.txt", b"y"), ("z.txt", b"z")],
            paths=["x.txt", "dir/y.txt", "dir/sub/z.txt"],
        )
        self.assertEqual(response.status_code, 201)
        payload = response.get_json()
        self.assertEqual(payload["successful"], 3)
        self.assertNotIn("errors", payload)
        self.assertEqual(
            [entry["path"] for entry in payload["files"]],
            ["x.txt", "dir/y.txt", "dir/sub/z.txt"],
        )
        self.assertTrue((self.tenant_dir(tenant_key) / "dir" / "sub" / "z.txt").is_file())

        listing = self.client.get("/api/files").get_json()
        self.assertEqual(
            [entry["path"] for entry in listing["files"]],
            ["dir/sub/z.txt", "dir/y.txt", "x.txt"],
        )

        html = self.client.get("/").data.decode()
        self.assertIn("dir/sub/z.txt", html)
        self.assertIn('href="/files/dir/sub/z.txt"', html)

    def test_duplicate_upload_keeps_both_files(self):
        tenant_key = self.login()
        first = self.upload([("report.pdf", b"first")])
        second = self.upload([("report.pdf", b"second")])
        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 201)

        renamed = second.get_json()["files"][0]["path"]
        self.assertNotEqual(renamed, "report.pdf")
        self.assertTrue(renamed.startswith("report-") and renamed.endswith(".pdf"))
        self.assertEqual((self.tenant_dir(tenant_key) / "report.pdf").read_bytes(), b"first")
        self.assertEqual((self.tenant_dir(tenant_key) / renamed).read_bytes(), b"second")

        listing = self.client.get("/api/files").get_json()
        self.assertCountEqual(
            [entry["path"] for entry in listing["files"]], ["report.pdf", renamed]
        )

    def test_partial_batch_reports_each_file(self):
        self.login()
        response = self.upload(
            [("ok.txt", b"ok"), ("evil.txt", b"evil")],
            paths=["ok.txt", "../../evil.txt"],
        )
        self.assertEqual(response.status_code, 207)
        payload = response.get_json()
        self.assertEqual(payload["successful"], 1)
        self.assertEqual(payload["files"][0]["path"], "ok.txt")
        self.assertEqual(len(payload["errors"]), 1)
        self.assertEqual(payload["errors"][0]["filename"], "../../evil.txt")
        self.assertEqual(payload["errors"][0]["reason"], "invalid_path")
        self.assertFalse((self.storage.UPLOADS_DIR.parent / "evil.txt").exists())

    def test_all_invalid_batch_is_bad_request(self):
        self.login()
        response = self.upload([("evil.txt", b"evil")], paths=["/etc/evil.txt"])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["successful"], 0)

    def test_storage_fault_batch_is_server_error(self):
        self.login()
        with mock.patch.object(
            self.storage.os, "link", side_effect=PermissionError(13, "denied")
        ):
            response = self.upload([("x.txt", b"x")])
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json()["errors"][0]["reason"], "storage_fault")

    def test_empty_upload_is_rejected(self):
        self.login()
        response = self.client.post(
            "/upload", data={}, content_type="multipart/form-data", headers=JSON
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["reason"], "no_files")

        html_response = self.client.post(
            "/upload", data={}, content_type="multipart/form-data"
        )
        self.assertEqual(html_response.status_code, 303)
        followed = self.client.get("/")
        self.assertIn("No file selected.", followed.data.decode())

    def test_paths_must_match_files(self):
        self.login()
        response = self.upload([("a.txt", b"a")], paths=["a.txt", "b.txt"])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["reason"], "path_mismatch")

    def test_too_many_files_is_rejected(self):
        self.login()
        with mock.patch.object(
            self.app_module,
            "SETTINGS",
            replace(self.app_module.SETTINGS, max_files_per_batch=1),
        ):
            response = self.upload([("a.txt", b"a"), ("b.txt", b"b")])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["reason"], "too_many_files")

    def _reload_with_upload_cap(self, megabytes):
        os.environ["FILEDROP_MAX_UPLOAD_SIZE_MB"] = str(megabytes)
        self._reload_app()
        self.app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
        self.app_module.limiter.enabled = False
        self.client = self.app.test_client()

    def test_per_file_cap_does_not_cap_the_whole_batch(self):
        self._reload_with_upload_cap(1)
        self.login()
        chunk = b"x" * (700 * 1024)
        response = self.upload([("a.bin", chunk), ("b.bin", chunk)])
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["successful"], 2)

    def test_oversized_file_is_reported_per_file(self):
        self._reload_with_upload_cap(1)
        self.login()
        big = b"x" * (1024 * 1024 + 1)
        response = self.upload([("small.txt", b"ok"), ("big.bin", big)])
        self.assertEqual(response.status_code, 207)
        payload = response.get_json()
        self.assertEqual(payload["files"][0]["path"], "small.txt")
        self.assertEqual(payload["errors"][0]["filename"], "big.bin")
        self.assertEqual(payload["errors"][0]["reason"], "too_large")

        only_big = self.upload([("big.bin", big)])
        self.assertEqual(only_big.status_code, 413)
        self.assertEqual(only_big.get_json()["errors"][0]["reason"], "too_large")

    def test_busy_server_rejects_upload(self):
        self.login()
        with mock.patch.object(self.app_module.upload_limiter, "acquire", return_value=False):
            response = self.upload([("a.txt", b"a")])
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.get_json()["reason"], "busy")

    def test_html_upload_redirects_with_flash(self):
        self.login()
        response = self.upload([("a.txt", b"a")], headers={})
        self.assertEqual(response.status_code, 303)
        followed = self.client.get("/")
        self.assertIn("Uploaded 1 file(s).", followed.data.decode())

    def test_download_round_trip(self):
        self.login()
        contents = {
            "plain.txt": b"plain",
            "dir name/with space.txt": b"spaces",
            "odd/a#b?c%.txt": b"reserved characters",
            "报告/总结.txt": "中文".encode("utf-8"),
        }
        names = list(contents)
        response = self.upload(
            [(name.rsplit("/", 1)[-1], contents[name]) for name in names], paths=names
        )
        self.assertEqual(response.status_code, 201)

        listing = self.client.get("/api/files").get_json()["files"]
        self.assertCountEqual([entry["path"] for entry in listing], names)
        for entry in listing:
            with self.subTest(path=entry["path"]):
                self.assertEqual(
                    entry["url"],
                    "/files/" + "/".join(quote(s, safe="") for s in entry["path"].split("/")),
                )
                download = self.client.get(entry["url"])
                self.assertEqual(download.status_code, 200)
                self.assertEqual(download.data, contents[entry["path"]])
                download.close()

    def test_missing_file_is_not_found(self):
        self.login()
        response = self.client.get("/files/nope.txt")
        self.assertEqual(response.status_code, 404)
        json_response = self.client.get("/files/nope.txt", headers=JSON)
        self.assertEqual(json_response.status_code, 404)
        self.assertEqual(json_response.get_json()["error"], "Not found")

    def test_tenants_cannot_read_each_other(self):
        alice_key = self.login()
        self.upload([("secret.txt", b"alice only")])

        bob = self.app.test_client()
        bob_key = self.login(bob, "bob", "hunter22")
        self.assertNotEqual(alice_key, bob_key)

        self.assertEqual(bob.get("/api/files").get_json()["files"], [])
        for url in [
            "/files/secret.txt",
            f"/files/..%2F{alice_key}%2Fsecret.txt",
            f"/files/%2E%2E/{alice_key}/secret.txt",
        ]:
            with self.subTest(url=url):
                response = bob.get(url)
                self.assertEqual(response.status_code, 404)
                self.assertNotIn(b"alice only", response.data)

    def test_logout_removes_tenant_storage(self):
        tenant_key = self.login()
        self.upload([("a.txt", b"a")], paths=["nested/a.txt"])
        self.assertTrue(self.tenant_dir(tenant_key).exists())

        response = self.client.post("/auth/logout")
        self.assertEqual(response.status_code, 302)
        self.assertFalse(self.tenant_dir(tenant_key).exists())
        with self.client.session_transaction() as session:
            self.assertNotIn("tenant_key", session)

        self.login()
        self.assertEqual(self.client.get("/api/files").get_json()["files"], [])

    def test_logout_without_files_is_noop(self):
        self.login()
        response = self.client.post("/auth/logout")
        self.assertEqual(response.status_code, 302)

    def test_logout_survives_teardown_failure(self):
        self.login()
        with mock.patch.object(
            self.app_module,
            "delete_tenant",
            side_effect=self.storage.StorageFault("disk on fire"),
        ):
            response = self.client.post("/auth/logout")
        self.assertEqual(response.status_code, 302)
        with self.client.session_transaction() as session:
            self.assertNotIn("tenant_key", session)

    def test_listing_failure_degrades_gracefully(self):
        self.login()
        with mock.patch.object(
            self.app_module,
            "list_tenant_files",
            side_effect=self.storage.StorageFault("unreadable"),
        ):
            page = self.client.get("/")
            api_response = self.client.get("/api/files")
        self.assertEqual(page.status_code, 200)
        self.assertIn("Could not load file list.", page.data.decode())
        self.assertEqual(api_response.status_code, 503)

    def test_random_scheme_issues_distinct_keys(self):
        os.environ["FILEDROP_TENANT_SCHEME"] = "random"
        self._reload_app()
        self.app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
        self.app_module.limiter.enabled = False
        client = self.app.test_client()

        keys = []
        for _ in range(2):
            client.post("/auth/login", data={"username": "alice", "password": "secret1"})
            with client.session_transaction() as session:
                keys.append(session["tenant_key"])
            client.post("/auth/logout")
        self.assertNotEqual(keys[0], keys[1])

    def test_security_headers_and_request_id(self):
        response = self.client.get("/auth/login", headers={"X-Request-ID": "abc123"})
        self.assertEqual(response.headers["X-Request-ID"], "abc123")
        self.assertEqual(response.headers["X-Frame-Options"], "DENY")
        self.assertEqual(response.headers["X-Content-Type-Options"], "nosniff")


if __name__ == "__main__":
    unittest.main()
