"""Tests for the suspicious-change scan."""

from __future__ import annotations

from taskloop.gates.antipatterns import Finding, added_lines_by_file, scan_diff

DIFF = """\
diff --git a/.eslintrc.json b/.eslintrc.json
--- a/.eslintrc.json
+++ b/.eslintrc.json
@@ -1,3 +1,4 @@
 {
+  "rules": {"no-unused-vars": "off"}
 }
diff --git a/tsconfig.json b/tsconfig.json
--- a/tsconfig.json
+++ b/tsconfig.json
@@ -2,1 +2,1 @@
-    "strict": true
+    "strict": false
diff --git a/src/api.py b/src/api.py
--- a/src/api.py
+++ b/src/api.py
@@ -10,1 +10,2 @@
+    value = payload["x"]  # type: ignore[index]
+    other = compute()
diff --git a/old.py b/old.py
--- a/old.py
+++ /dev/null
@@ -1 +0,0 @@
-# noqa
"""


def test_added_lines_by_file() -> None:
    files = added_lines_by_file(DIFF)

    assert set(files) == {".eslintrc.json", "tsconfig.json", "src/api.py"}
    assert files["src/api.py"] == ['    value = payload["x"]  # type: ignore[index]', "    other = compute()"]


def test_scan_diff_findings() -> None:
    findings = scan_diff(DIFF)

    assert Finding(".eslintrc.json", "lint rule disabled", '"rules": {"no-unused-vars": "off"}') in findings
    assert Finding("tsconfig.json", "strict mode disabled", '"strict": false') in findings
    assert [f.rule for f in findings if f.path == "src/api.py"] == ["type: ignore added"]
    assert not any(f.path == "old.py" for f in findings)


def test_max_warnings_raise() -> None:
    diff = '+++ b/package.json\n+    "lint": "eslint . --max-warnings 50",\n'
    assert [f.rule for f in scan_diff(diff)] == ["lint warning threshold raised"]


def test_clean_diff() -> None:
    assert scan_diff("+++ b/src/app.py\n+print('hi')\n") == []
