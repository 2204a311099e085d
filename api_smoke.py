#!/usr/bin/env python3
"""
Smoke checks against a running filedrop server.
Logs in as two users, uploads, lists, downloads and logs out.
"""

import os
import re
import sys
import uuid
from io import BytesIO
from urllib.parse import quote

import requests

BASE_URL = os.environ.get("FILEDROP_URL", "http://localhost:3000").rstrip("/")
JSON_HEADERS = {"Accept": "application/json"}
CSRF_PATTERN = re.compile(r'name="csrf_token" value="([^"]+)"')
check_results = []


class CheckResult:
    def __init__(self, endpoint, method, status, message, severity="info"):
        self.endpoint = endpoint
        self.method = method
        self.status = status
        self.message = message
        self.severity = severity

    def __str__(self):
        status_symbol = "✓" if self.status == "PASS" else "✗" if self.status == "FAIL" else "!"
        return f"[{status_symbol}] {self.method} {self.endpoint}: {self.message}"


def log_check(endpoint, method, status, message, severity="info"):
    result = CheckResult(endpoint, method, status, message, severity)
    check_results.append(result)
    print(result)


def csrf_token(session, page="/auth/login"):
    response = session.get(f"{BASE_URL}{page}", timeout=5)
    match = CSRF_PATTERN.search(response.text)
    return match.group(1) if match else ""


def login(username, password):
    session = requests.Session()
    token = csrf_token(session)
    response = session.post(
        f"{BASE_URL}/auth/login",
        data={"username": username, "password": password, "csrf_token": token},
        allow_redirects=False,
        timeout=5,
    )
    if response.status_code == 302:
        log_check("/auth/login", "POST", "PASS", f"Logged in as {username}")
        return session
    log_check("/auth/login", "POST", "FAIL", f"Status: {response.status_code}", "error")
    return None


def check_health():
    print("\n=== Health ===")
    try:
        response = requests.get(f"{BASE_URL}/health", timeout=5)
        data = response.json()
        if response.status_code == 200 and data.get("status") == "healthy":
            log_check("/health", "GET", "PASS", "Health check passed")
        else:
            log_check("/health", "GET", "WARN", f"Unhealthy status: {data}", "warning")
    except requests.RequestException as e:
        log_check("/health", "GET", "FAIL", f"Exception: {e}", "error")


def check_upload(session, declared_paths):
    print("\n=== Upload ===")
    token = csrf_token(session, "/")
    files = [
        ("uploadedFiles", (path.rsplit("/", 1)[-1], BytesIO(path.encode("utf-8")), "text/plain"))
        for path in declared_paths
    ]
    data = {"csrf_token": token, "paths": declared_paths}
    try:
        response = session.post(
            f"{BASE_URL}/upload", files=files, data=data, headers=JSON_HEADERS, timeout=10
        )
    except requests.RequestException as e:
        log_check("/upload", "POST", "FAIL", f"Exception: {e}", "error")
        return []
    if response.status_code != 201:
        log_check("/upload", "POST", "FAIL", f"Status: {response.status_code}, Response: {response.text}", "error")
        return []
    stored = [entry["path"] for entry in response.json()["files"]]
    log_check("/upload", "POST", "PASS", f"Stored {len(stored)} file(s)")
    return stored


def check_listing_and_download(session, expected):
    print("\n=== Listing and download ===")
    response = session.get(f"{BASE_URL}/api/files", headers=JSON_HEADERS, timeout=5)
    if response.status_code != 200:
        log_check("/api/files", "GET", "FAIL", f"Status: {response.status_code}", "error")
        return
    listed = [entry["path"] for entry in response.json()["files"]]
    if sorted(listed) == sorted(expected):
        log_check("/api/files", "GET", "PASS", f"Listed {len(listed)} file(s)")
    else:
        log_check("/api/files", "GET", "FAIL", f"Expected {expected}, got {listed}", "error")

    for path in listed:
        url = "/files/" + "/".join(quote(segment, safe="") for segment in path.split("/"))
        download = session.get(f"{BASE_URL}{url}", timeout=10)
        if download.status_code == 200 and download.content == path.encode("utf-8"):
            log_check(url, "GET", "PASS", "Downloaded original bytes")
        else:
            log_check(url, "GET", "FAIL", f"Status: {download.status_code}", "error")


def check_isolation(other_session, stored):
    print("\n=== Tenant isolation ===")
    for path in stored:
        url = "/files/" + "/".join(quote(segment, safe="") for segment in path.split("/"))
        response = other_session.get(f"{BASE_URL}{url}", timeout=5)
        if response.status_code == 404:
            log_check(url, "GET", "PASS", "Other tenant cannot read file")
        else:
            log_check(url, "GET", "FAIL", f"Other tenant got status {response.status_code}", "critical")


def check_traversal(session):
    print("\n=== Path traversal ===")
    token = csrf_token(session, "/")
    files = [("uploadedFiles", ("evil.txt", BytesIO(b"evil"), "text/plain"))]
    data = {"csrf_token": token, "paths": ["../../evil.txt"]}
    response = session.post(
        f"{BASE_URL}/upload", files=files, data=data, headers=JSON_HEADERS, timeout=10
    )
    if response.status_code == 400:
        log_check("/upload", "POST", "PASS", "Traversal path rejected")
    else:
        log_check("/upload", "POST", "FAIL", f"Traversal got status {response.status_code}", "critical")


def check_logout(session):
    print("\n=== Logout ===")
    token = csrf_token(session, "/")
    session.post(f"{BASE_URL}/auth/logout", data={"csrf_token": token}, timeout=5)
    response = session.get(f"{BASE_URL}/api/files", headers=JSON_HEADERS, timeout=5)
    if response.status_code == 401:
        log_check("/auth/logout", "POST", "PASS", "Session ended")
    else:
        log_check("/auth/logout", "POST", "FAIL", f"Status after logout: {response.status_code}", "error")


def print_summary():
    print("\n" + "=" * 80)
    passed = sum(1 for r in check_results if r.status == "PASS")
    failed = sum(1 for r in check_results if r.status == "FAIL")
    print(f"Passed: {passed}  Failed: {failed}  Total: {len(check_results)}")


def main():
    print(f"Base URL: {BASE_URL}")
    print("=" * 80)

    check_health()
    suffix = uuid.uuid4().hex[:8]
    alice = login(f"alice_{suffix}", "smoke-secret")
    bob = login(f"bob_{suffix}", "smoke-secret")
    if alice is None or bob is None:
        print_summary()
        return 1

    stored = check_upload(alice, ["top.txt", "folder/sub/doc.txt", "报告/总结.txt"])
    check_listing_and_download(alice, stored)
    check_isolation(bob, stored)
    check_traversal(alice)
    check_logout(alice)
    check_logout(bob)

    print_summary()
    failed = sum(1 for r in check_results if r.status == "FAIL")
    critical = sum(1 for r in check_results if r.severity == "critical")
    if critical > 0:
        print("\n⚠️  ISOLATION FAILURES FOUND!")
        return 2
    if failed > 0:
        print("\n⚠️  CHECKS FAILED!")
        return 1
    print("\n✓ All checks passed!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
