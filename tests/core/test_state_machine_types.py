import textwrap
from pathlib import Path

import pytest
from mypy import api

REPO_ROOT = Path(__file__).resolve().parents[2]


def _mypy(tmp_path, monkeypatch, *targets):
    monkeypatch.setenv("MYPYPATH", str(REPO_ROOT))
    stdout, stderr, status = api.run(
        [
            "--no-incremental",
            "--follow-imports=silent",
            "--cache-dir",
            str(tmp_path / ".mypy_cache"),
            *targets,
        ]
    )
    return stdout + stderr, status


def _snippet(tmp_path, body):
    path = tmp_path / "usage.py"
    path.write_text("from hme.core.state_machine import Phase, transition\n\n" + textwrap.dedent(body))
    return str(path)


def test_legal_pairs_type_check(tmp_path, monkeypatch):
    snippet = _snippet(
        tmp_path,
        """
        transition(Phase.SIGNED_OUT, "SUCCESSFUL_SIGN_IN")
        transition(Phase.SIGNED_IN, "SUCCESSFUL_VERIFICATION")
        transition(Phase.VERIFIED, "MANAGE")
        transition(Phase.VERIFIED_AND_MANAGING, "GENERATE")
        transition(Phase.VERIFIED_AND_MANAGING, "SUCCESSFUL_SIGN_OUT")
        """,
    )
    output, status = _mypy(tmp_path, monkeypatch, snippet)
    assert status == 0, output


@pytest.mark.parametrize(
    "phase,action",
    [
        ("SIGNED_OUT", "MANAGE"),
        ("SIGNED_OUT", "SUCCESSFUL_SIGN_OUT"),
        ("SIGNED_IN", "GENERATE"),
        ("VERIFIED", "SUCCESSFUL_VERIFICATION"),
        ("VERIFIED_AND_MANAGING", "MANAGE"),
    ],
)
def test_illegal_pairs_are_rejected_statically(tmp_path, monkeypatch, phase, action):
    snippet = _snippet(tmp_path, f'transition(Phase.{phase}, "{action}")\n')
    output, status = _mypy(tmp_path, monkeypatch, snippet)
    assert status == 1
    assert "No overload variant" in output


def test_runtime_dispatch_path_type_checks(tmp_path, monkeypatch):
    # next_phase() narrows phase and action before calling transition()
    output, status = _mypy(tmp_path, monkeypatch, "-m", "hme.core.state_machine")
    assert status == 0, output
