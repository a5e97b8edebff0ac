import json

from citrea_pay.cli import build_parser, main

from conftest import MNEMONIC


def test_derive_prints_receiving_address(monkeypatch, capsys, deriver):
    monkeypatch.setenv("MNEMONIC", MNEMONIC)

    assert main(["derive", "inv_1700000000000_deadbeef"]) == 0

    output = json.loads(capsys.readouterr().out)
    account = deriver.derive("inv_1700000000000_deadbeef")
    assert output == {"invoiceId": "inv_1700000000000_deadbeef", "index": account.index, "address": account.address}


def test_derive_without_mnemonic(monkeypatch, capsys):
    monkeypatch.setenv("MNEMONIC", "")
    assert main(["derive", "inv_x"]) == 1
    assert "MNEMONIC" in capsys.readouterr().out


def test_serve_options():
    args = build_parser().parse_args(["serve", "--port", "8080", "--no-jobs"])
    assert args.port == 8080
    assert args.no_jobs is True
