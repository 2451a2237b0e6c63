"""CLI tests: the in-memory demo command."""

import json
from types import SimpleNamespace

from workloom.__main__ import cmd_demo


class TestDemoCommand:

    def test_demo_completes_and_prints_status(self, capsys):
        assert cmd_demo(SimpleNamespace()) == 0

        status = json.loads(capsys.readouterr().out)
        assert status["status"] == "DONE"
        assert len(status["work_units"]) == 2
        assert all(u["is_sampled"] for u in status["work_units"])
