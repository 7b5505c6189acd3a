from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import yaml
from lxml import etree

from facturador.cli import (
    _check_keyring_available,
    _init_config,
    _preflight,
    _remove_env_var,
    _setup_certificate,
    _upsert_env_var,
    _warn_open_permissions,
    main,
)
from facturador.utils.registry import list_documents
from facturador.utils.sequence import default_store

from tests.conftest import xml_text


@pytest.fixture
def borrador(tmp_path, draft):
    path = tmp_path / "borrador.yaml"
    path.write_text(yaml.dump(draft))
    return path


class TestMain:
    @patch("facturador.cli._init_config")
    def test_init_dispatches(self, mock_init):
        main(["init"])
        mock_init.assert_called_once()

    @patch("facturador.cli._preflight", return_value=False)
    def test_exit_1_on_failed_preflight(self, mock_preflight):
        with pytest.raises(SystemExit, match="1"):
            main(["docs"])

    def test_requires_command(self):
        with pytest.raises(SystemExit):
            main([])


class TestEmitir:
    def test_emits_and_registers(self, config_dir, borrador, tmp_path, capsys):
        main(["emitir", str(borrador)])
        out = capsys.readouterr().out
        assert "Consecutivo: 01010010000000000001" in out
        assert "₡226,00" in out
        assert "Firmado:     no" in out

        docs = list_documents("test")
        assert len(docs) == 1
        assert (tmp_path / "data" / "test" / "emitidos" / f"{docs[0]['clave']}.xml").exists()

    def test_second_emission_uses_next_number(self, config_dir, borrador, capsys):
        main(["emitir", str(borrador)])
        main(["emitir", str(borrador)])
        assert "Consecutivo: 01010010000000000002" in capsys.readouterr().out

    def test_dry_run_consumes_nothing(self, config_dir, borrador, tmp_path, capsys):
        main(["emitir", str(borrador), "--dry-run"])
        out = capsys.readouterr().out
        root = etree.fromstring(out.strip().encode())
        assert etree.QName(root).localname == "FacturaElectronica"
        assert list_documents() == []
        store = default_store()
        assert store.environment("3101123456") == "test"
        assert not (tmp_path / "data" / "security_codes.json").exists()

    def test_dry_run_in_production(self, config_dir, borrador, tmp_path, capsys):
        main(["ambiente", "production"])
        capsys.readouterr()
        main(["emitir", str(borrador), "--dry-run"])
        root = etree.fromstring(capsys.readouterr().out.strip().encode())
        assert xml_text(root, "NumeroConsecutivo") == "01010010000000000001"
        assert not (tmp_path / "data" / "security_codes.json").exists()

    def test_other_environment_refused(self, config_dir, borrador, capsys):
        main(["emitir", str(borrador)])
        capsys.readouterr()
        with pytest.raises(SystemExit, match="1"):
            main(["emitir", str(borrador), "--env", "production"])
        assert "facturador ambiente production" in capsys.readouterr().err
        assert default_store().environment("3101123456") == "test"
        assert len(list_documents()) == 1

    def test_production_after_switch_keeps_counting(self, config_dir, borrador, capsys):
        main(["ambiente", "production"])
        main(["emitir", str(borrador)])
        main(["emitir", str(borrador), "--env", "production"])
        with pytest.raises(SystemExit):
            main(["emitir", str(borrador), "--env", "test"])
        main(["emitir", str(borrador)])
        out = capsys.readouterr().out
        assert "Consecutivo: 01010010000000000003" in out
        consecutivos = [d["consecutivo"] for d in list_documents("production")]
        assert len(consecutivos) == len(set(consecutivos)) == 3

    def test_error_exits_1(self, config_dir, tmp_path, draft, capsys):
        draft["lineas"] = []
        path = tmp_path / "vacio.yaml"
        path.write_text(yaml.dump(draft))
        with pytest.raises(SystemExit, match="1"):
            main(["emitir", str(path)])
        assert "lineas de detalle" in capsys.readouterr().err

    def test_malformed_notes_exit_1(self, config_dir, tmp_path, draft, capsys):
        draft["otros"] = [{"tipo": "texto"}]
        path = tmp_path / "notas.yaml"
        path.write_text(yaml.dump(draft))
        with pytest.raises(SystemExit, match="1"):
            main(["emitir", str(path)])
        assert "Error: otros 1.contenido" in capsys.readouterr().err
        assert list_documents() == []


class TestConsecutivoAmbiente:
    def test_consecutivo_shows_counters(self, config_dir, borrador, capsys):
        main(["emitir", str(borrador)])
        capsys.readouterr()
        main(["consecutivo"])
        out = capsys.readouterr().out
        assert "Ambiente: test" in out
        assert "01-01-001: 1" in out
        assert "04-01-001: 0" in out

    def test_ambiente_switch(self, config_dir, borrador, capsys):
        main(["emitir", str(borrador)])
        main(["ambiente", "production"])
        assert "Ambiente cambiado a production" in capsys.readouterr().out
        main(["ambiente", "production"])
        assert "El ambiente ya era production" in capsys.readouterr().out
        main(["consecutivo"])
        assert "01-01-001: 0" in capsys.readouterr().out


class TestDocs:
    def test_empty(self, config_dir, capsys):
        main(["docs"])
        assert "Sin documentos registrados." in capsys.readouterr().out

    def test_lists_emitted(self, config_dir, borrador, capsys):
        main(["emitir", str(borrador)])
        capsys.readouterr()
        main(["docs", "--env", "test"])
        out = capsys.readouterr().out
        assert "01010010000000000001" in out
        assert "generado" in out
        assert "CLIENTE EJEMPLO S.A." in out


class TestPreflight:
    def test_preflight_ok(self, config_dir, tmp_path):
        assert _preflight() is True
        assert (tmp_path / "data").is_dir()

    def test_preflight_no_config(self, capsys):
        assert _preflight() is False
        assert "facturador init" in capsys.readouterr().out

    def test_preflight_no_emisor(self, tmp_path, capsys):
        (tmp_path / "config").mkdir()
        assert _preflight() is False
        assert "emisor.yaml" in capsys.readouterr().out


class TestInitConfig:
    def test_copies_templates(self, monkeypatch, tmp_path):
        monkeypatch.setattr("builtins.input", lambda _: "n")
        _init_config()
        config_dir = tmp_path / "config"
        assert (config_dir / "emisor.yaml.example").exists()
        assert (config_dir / "productos.yaml.example").exists()
        assert (config_dir / "borrador.yaml.example").exists()
        assert (config_dir / "receptores" / "cliente.yaml.example").exists()
        assert (tmp_path / "data").exists()

    def test_templates_are_valid(self, monkeypatch, tmp_path):
        monkeypatch.setattr("builtins.input", lambda _: "n")
        _init_config()
        emisor = yaml.safe_load((tmp_path / "config" / "emisor.yaml.example").read_text())
        assert emisor["identificacion"]["tipo"]
        assert emisor["terminal"]

    def test_skips_existing(self, monkeypatch, tmp_path, capsys):
        config_dir = tmp_path / "config"
        config_dir.mkdir(parents=True)
        (config_dir / "emisor.yaml.example").write_text("existing")
        monkeypatch.setattr("builtins.input", lambda _: "n")
        _init_config()
        assert (config_dir / "emisor.yaml.example").read_text() == "existing"
        assert "ya existe" in capsys.readouterr().out

    def test_cert_step_shown(self, monkeypatch, capsys):
        monkeypatch.setattr("builtins.input", lambda _: "n")
        _init_config()
        assert "CERT_P12_PATH" in capsys.readouterr().out

    def test_cert_configured_skips_step(self, monkeypatch, capsys):
        monkeypatch.setattr("builtins.input", lambda _: "s")
        with patch("facturador.cli._setup_certificate", return_value=True):
            _init_config()
        assert "CERT_P12_PATH" not in capsys.readouterr().out

    def test_eof_during_cert_prompt(self, monkeypatch, capsys):
        monkeypatch.setattr("builtins.input", MagicMock(side_effect=EOFError))
        _init_config()
        assert "Configuracion:" in capsys.readouterr().out


class TestEnvFile:
    def test_upsert_creates_file(self, tmp_path):
        env_file = tmp_path / "sub" / ".env"
        _upsert_env_var(env_file, "KEY", "value")
        content = env_file.read_text()
        assert "KEY=" in content
        assert "value" in content

    def test_upsert_handles_special_chars(self, tmp_path):
        from dotenv import dotenv_values

        env_file = tmp_path / ".env"
        _upsert_env_var(env_file, "PIN", "abc #def")
        assert dotenv_values(env_file)["PIN"] == "abc #def"

    def test_remove_existing_key(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("KEEP='yes'\nREMOVE='me'\n")
        _remove_env_var(env_file, "REMOVE")
        content = env_file.read_text()
        assert "KEEP=" in content
        assert "REMOVE" not in content

    def test_remove_missing_file(self, tmp_path):
        _remove_env_var(tmp_path / ".env", "KEY")

    def test_warns_group_readable(self, tmp_path, capsys):
        env_file = tmp_path / ".env"
        env_file.write_text("SECRET=x\n")
        env_file.chmod(0o644)
        _warn_open_permissions(env_file)
        assert "permisos abiertos" in capsys.readouterr().out

    def test_no_warn_restricted(self, tmp_path, capsys):
        env_file = tmp_path / ".env"
        env_file.write_text("SECRET=x\n")
        env_file.chmod(0o600)
        _warn_open_permissions(env_file)
        assert capsys.readouterr().out == ""


class TestCheckKeyringAvailable:
    def test_available_with_real_backend(self):
        mock_kr = MagicMock()
        mock_kr.get_keyring.return_value = MagicMock()
        mock_fail_module = MagicMock()
        mock_fail_module.Keyring = type("FailKeyring", (), {})
        with patch.dict(
            "sys.modules",
            {"keyring": mock_kr, "keyring.backends.fail": mock_fail_module},
        ):
            assert _check_keyring_available() is True

    def test_unavailable_with_fail_backend(self):
        fail_cls = type("Keyring", (), {})
        mock_kr = MagicMock()
        mock_kr.get_keyring.return_value = fail_cls()
        mock_fail_module = MagicMock()
        mock_fail_module.Keyring = fail_cls
        with patch.dict(
            "sys.modules",
            {"keyring": mock_kr, "keyring.backends.fail": mock_fail_module},
        ):
            assert _check_keyring_available() is False


class TestSetupCertificate:
    def test_skip_on_empty_path(self, tmp_path, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda _: "")
        assert _setup_certificate(tmp_path) is False

    def test_file_not_found_reprompts(self, tmp_path, monkeypatch):
        inputs = iter(["/nonexistent/llave.p12", ""])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        assert _setup_certificate(tmp_path) is False

    def test_invalid_key_aborts(self, tmp_path, monkeypatch, capsys):
        fake = tmp_path / "mala.p12"
        fake.write_bytes(b"not a real p12")
        monkeypatch.setattr("builtins.input", lambda _: str(fake))
        monkeypatch.setattr("getpass.getpass", lambda _: "0000")
        assert _setup_certificate(tmp_path) is False
        assert "ERROR: Llave invalida" in capsys.readouterr().out

    def test_successful_setup_dotenv(self, tmp_path, monkeypatch, test_p12):
        from dotenv import dotenv_values

        p12_path, pin = test_p12
        inputs = iter([p12_path, "2"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pin)
        monkeypatch.setattr("facturador.cli._check_keyring_available", lambda: False)

        with patch("facturador.config._delete_keyring_password", return_value=False):
            assert _setup_certificate(tmp_path) is True

        vals = dotenv_values(tmp_path / ".env")
        assert vals["CERT_P12_PATH"] == p12_path
        assert vals["CERT_P12_PASSWORD"] == pin

    def test_successful_setup_keyring(self, tmp_path, monkeypatch, test_p12):
        from dotenv import dotenv_values

        p12_path, pin = test_p12
        inputs = iter([p12_path, "1"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pin)
        monkeypatch.setattr("facturador.cli._check_keyring_available", lambda: True)

        with patch("facturador.config._set_keyring_password", return_value=True) as mock_set:
            assert _setup_certificate(tmp_path) is True

        mock_set.assert_called_once_with(pin)
        vals = dotenv_values(tmp_path / ".env")
        assert vals["CERT_P12_PATH"] == p12_path
        assert "CERT_P12_PASSWORD" not in vals

    def test_keyring_failure_falls_back_to_dotenv(self, tmp_path, monkeypatch, test_p12, capsys):
        from dotenv import dotenv_values

        p12_path, pin = test_p12
        inputs = iter([p12_path, "1"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pin)
        monkeypatch.setattr("facturador.cli._check_keyring_available", lambda: True)

        with patch("facturador.config._set_keyring_password", return_value=False):
            assert _setup_certificate(tmp_path) is True

        assert "No se pudo guardar en el llavero" in capsys.readouterr().out
        assert dotenv_values(tmp_path / ".env")["CERT_P12_PASSWORD"] == pin

    def test_no_store_option(self, tmp_path, monkeypatch, test_p12, capsys):
        from dotenv import dotenv_values

        p12_path, pin = test_p12
        inputs = iter([p12_path, "3"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pin)
        monkeypatch.setattr("facturador.cli._check_keyring_available", lambda: False)

        with patch("facturador.config._delete_keyring_password", return_value=False):
            assert _setup_certificate(tmp_path) is True

        vals = dotenv_values(tmp_path / ".env")
        assert vals["CERT_P12_PATH"] == p12_path
        assert "CERT_P12_PASSWORD" not in vals
        assert "PIN no guardado" in capsys.readouterr().out
