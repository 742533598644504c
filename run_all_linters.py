#!/usr/bin/env python3
"""統一的檢查腳本，執行所有 linter、格式化工具與測試。

依序執行 Black、isort、Ruff、Pylint 與 pytest。
加上 `--fix` 時，Black 與 isort 會直接改寫檔案，Ruff 會套用自動修正。
"""

from __future__ import annotations

import argparse
from pathlib import Path
import subprocess
import sys

ROOT = Path(__file__).parent
PACKAGES = ["app", "core", "infrastructure", "main.py"]


def run_command(cmd: list[str], description: str) -> tuple[bool, str]:
    """執行命令並返回成功狀態和輸出。"""
    print(f"\n{'=' * 60}")
    print(f"執行: {description}")
    print(f"命令: {' '.join(cmd)}")
    print("=" * 60)

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False, cwd=ROOT)
    except OSError as e:
        print(f"❌ 執行錯誤: {e}")
        return False, str(e)

    success = result.returncode == 0
    output = result.stdout + result.stderr
    print("✅ 成功" if success else "❌ 失敗")
    print(f"\n輸出:\n{output}" if output.strip() else "(無輸出)")
    return success, output


def build_commands(fix: bool) -> list[tuple[list[str], str]]:
    python = sys.executable
    black = [python, "-m", "black", "."] + ([] if fix else ["--check"])
    isort = [python, "-m", "isort", "."] + ([] if fix else ["--check-only"])
    ruff = [python, "-m", "ruff", "check", "."] + (["--fix"] if fix else [])
    return [
        (black, "Black 格式化" if fix else "Black 格式化檢查"),
        (isort, "isort 匯入排序" if fix else "isort 匯入排序檢查"),
        (ruff, "Ruff 靜態檢查"),
        ([python, "-m", "pylint", *PACKAGES], "Pylint 靜態分析"),
        ([python, "-m", "pytest", "-q"], "pytest 測試"),
    ]


def main() -> None:
    """主函數：依序執行所有檢查並輸出總結報告。"""
    parser = argparse.ArgumentParser(description="Run formatters, linters and tests.")
    parser.add_argument("--fix", action="store_true", help="rewrite files instead of checking")
    args = parser.parse_args()

    results = [
        (description, *run_command(cmd, description))
        for cmd, description in build_commands(args.fix)
    ]

    print(f"\n{'=' * 60}")
    print("總結報告")
    print("=" * 60)
    for description, success, _ in results:
        print(f"{description}: {'✅ 通過' if success else '❌ 失敗'}")

    all_passed = all(success for _, success, _ in results)
    print(f"\n整體結果: {'✅ 全部通過' if all_passed else '❌ 有錯誤'}")
    sys.exit(0 if all_passed else 1)


if __name__ == "__main__":
    main()
