from __future__ import annotations

import argparse
import getpass
import logging
import stat
import sys
from importlib.resources import files
from pathlib import Path

_TEMPLATES = (
    "emisor.yaml.example",
    "productos.yaml.example",
    "borrador.yaml.example",
    "receptores/cliente.yaml.example",
)

_YES = ("", "s", "si", "y", "yes")


def _check_keyring_available() -> bool:
    """True when keyring is importable and its active backend is not the fail backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        backend = keyring.get_keyring()
    except Exception:
        return False
    return not isinstance(backend, FailKeyring)


# --- .env editing ---


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Write ``key`` into the .env file (created if missing), quoted by python-dotenv."""
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    env_file.touch(exist_ok=True)
    set_key(str(env_file), key, value)


def _remove_env_var(env_file: Path, key: str) -> None:
    from dotenv import unset_key

    if env_file.is_file():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """The .env may hold the PIN: complain when group or others can read it."""
    try:
        readable_by_others = env_file.stat().st_mode & (stat.S_IRGRP | stat.S_IROTH)
    except OSError:
        return
    if readable_by_others:
        print(f"\n  AVISO: {env_file} tiene permisos abiertos.")
        print(f"  Recomendacion: chmod 600 {env_file}")


# --- Signing key setup ---


def _ask_p12_path() -> str | None:
    while True:
        answer = input("Ruta del archivo .p12 (vacio para omitir): ").strip()
        if not answer:
            return None
        if Path(answer).is_file():
            return answer
        print(f"  Archivo no encontrado: {answer}")


def _describe_key(info: dict) -> None:
    print(f"  Titular: {info['subject']}")
    if info["holder_id"]:
        print(f"  Cedula:  {info['holder_id']}")
    print(f"  Valida hasta: {info['not_after']}")
    print("  Llave vigente" if info["valid"] else "  AVISO: Llave vencida")


def _ask_pin_storage(keyring_ok: bool) -> str:
    """Ask where to keep the PIN: "1" keyring, "2" .env, "3" nowhere."""
    menu = {
        "1": "Llavero del sistema (recomendado)",
        "2": "Archivo .env en el directorio de configuracion",
        "3": "No guardar (definir manualmente)",
    }
    if not keyring_ok:
        del menu["1"]

    print()
    print("Donde desea guardar el PIN?")
    for key, label in menu.items():
        print(f"  {key}. {label}")
    if not keyring_ok:
        print()
        print("  Nota: llavero del sistema no disponible (sin backend configurado).")
    print()

    prompt = f"Opcion [{'/'.join(menu)}]: "
    choice = input(prompt).strip()
    while choice not in menu:
        choice = input(prompt).strip()
    return choice


def _store_pin(env_file: Path, pin: str, choice: str) -> None:
    from facturador import config

    if choice == "1":
        if config._set_keyring_password(pin):
            _remove_env_var(env_file, "CERT_P12_PASSWORD")
            print("  PIN guardado en el llavero del sistema.")
        else:
            print("  ERROR: No se pudo guardar en el llavero. Se guarda en .env.")
            _upsert_env_var(env_file, "CERT_P12_PASSWORD", pin)
            _warn_open_permissions(env_file)
        return

    # Any PIN left in the keyring would take over once the .env entry is gone
    config._delete_keyring_password()
    if choice == "2":
        _upsert_env_var(env_file, "CERT_P12_PASSWORD", pin)
        print(f"  PIN guardado en {env_file}")
        _warn_open_permissions(env_file)
    else:
        _remove_env_var(env_file, "CERT_P12_PASSWORD")
        print("  PIN no guardado.")
        print("  Defina CERT_P12_PASSWORD en su shell o .env antes de emitir.")


def _setup_certificate(config_dir: Path) -> bool:
    """Ask for the .p12 and its PIN, check them, and record where they live.

    Returns True once CERT_P12_PATH has been written to the config dir .env.
    """
    from facturador.utils.certificate import certificate_info

    print()
    print("Configuracion de la llave criptografica (.p12)")
    print("──────────────────────────────────────────────")
    print()

    p12_path = _ask_p12_path()
    if p12_path is None:
        print("  Configuracion de la llave omitida.")
        return False

    pin = getpass.getpass("PIN de la llave: ")
    print()
    print("Validando llave…")
    try:
        info = certificate_info(p12_path, pin)
    except Exception as e:
        print(f"  ERROR: Llave invalida o PIN incorrecto: {e}")
        print("  Configuracion de la llave cancelada.")
        return False
    _describe_key(info)

    env_file = config_dir / ".env"
    _upsert_env_var(env_file, "CERT_P12_PATH", p12_path)
    _store_pin(env_file, pin, _ask_pin_storage(_check_keyring_available()))
    return True


# --- init / preflight ---


def _copy_templates(config_dir: Path) -> int:
    """Copy the bundled ``*.example`` files that are not there yet; return how many."""
    templates = files("facturador") / "templates"
    (config_dir / "receptores").mkdir(parents=True, exist_ok=True)
    created = 0
    for rel in _TEMPLATES:
        dest = config_dir / rel
        if dest.exists():
            print(f"  ya existe: {dest}")
            continue
        with (templates / rel).open("rb") as f:
            dest.write_bytes(f.read())
        print(f"  creado: {dest}")
        created += 1
    return created


def _init_config() -> None:
    from facturador.config import get_config_dir, get_data_dir

    config_dir, data_dir = get_config_dir(), get_data_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)
    created = _copy_templates(config_dir)

    print()
    print(f"Configuracion: {config_dir}")
    print(f"Datos:         {data_dir}")
    print()

    with_key = False
    try:
        answer = input("Desea configurar la llave criptografica ahora? [S/n]: ")
    except (EOFError, KeyboardInterrupt):
        print()
    else:
        if answer.strip().lower() in _YES:
            with_key = _setup_certificate(config_dir)

    print()
    if not created:
        print("No se creo ningun archivo nuevo (todos existian).")
        return

    steps = [
        f"cp {config_dir / 'emisor.yaml.example'} {config_dir / 'emisor.yaml'}",
        "Edite emisor.yaml y productos.yaml con los datos de su empresa",
    ]
    if not with_key:
        steps.append("Cree un .env con CERT_P12_PATH y CERT_P12_PASSWORD")
    steps.append("Ejecute: facturador emitir borrador.yaml")
    print("Siguientes pasos:")
    for n, step in enumerate(steps, 1):
        print(f"  {n}. {step}")


def _preflight() -> bool:
    """Check that an issuer is configured before running a command that needs one.

    The data dir is created on the way; a missing config dir or emisor.yaml
    prints what to do and returns False.
    """
    from facturador.config import get_config_dir, get_data_dir

    get_data_dir().mkdir(parents=True, exist_ok=True)
    config_dir = get_config_dir()
    if not config_dir.is_dir():
        print(f"Error: directorio de configuracion no encontrado: {config_dir}")
        print("Ejecute 'facturador init' para crear los archivos de ejemplo.")
        return False
    if not (config_dir / "emisor.yaml").is_file():
        print(f"Error: emisor.yaml no encontrado en {config_dir}")
        print("Ejecute 'facturador init' y configure el emisor.")
        return False
    return True


# --- Commands ---


def _cmd_emitir(args: argparse.Namespace) -> int:
    from facturador.config import load_yaml
    from facturador.services import emission
    from facturador.services.document_builder import summary_amounts
    from facturador.utils.formatters import format_amount

    draft = load_yaml(Path(args.borrador))
    if args.dry_run:
        prepared = emission.preview(draft, args.env)
        sys.stdout.write(prepared.xml.decode("utf-8"))
        sys.stdout.write("\n")
        return 0

    prepared = emission.prepare(draft, args.env)
    path = emission.save_xml(prepared)
    resumen = prepared.document.resumen
    print(f"Clave:       {prepared.clave}")
    print(f"Consecutivo: {prepared.document.numero_consecutivo}")
    total = summary_amounts(resumen)["TotalComprobante"]
    print(f"Total:       {format_amount(total, resumen.codigo_moneda)}")
    print(f"Firmado:     {'si' if prepared.signed else 'no'}")
    print(f"XML:         {path}")
    return 0


def _cmd_consecutivo(args: argparse.Namespace) -> int:
    from facturador.config import TIPO_FACTURA, TIPO_TIQUETE, load_emisor
    from facturador.models.document import SequenceScope
    from facturador.models.party import Issuer
    from facturador.utils.sequence import default_store

    issuer = Issuer.from_dict(load_emisor())
    store = default_store()
    env = store.environment(issuer.company_id)
    print(f"Ambiente: {env}")
    if args.env and args.env != env:
        print(f"  (los contadores se reiniciaran al emitir en {args.env})")
    for tipo, label in ((TIPO_FACTURA, "Factura"), (TIPO_TIQUETE, "Tiquete")):
        scope = SequenceScope(issuer.company_id, tipo, issuer.terminal, issuer.sucursal)
        print(f"  {label:<8} {scope.counter_key}: {store.current(scope)}")
    return 0


def _cmd_ambiente(args: argparse.Namespace) -> int:
    from facturador.config import load_emisor
    from facturador.models.party import Issuer
    from facturador.services.emission import switch_environment

    issuer = Issuer.from_dict(load_emisor())
    if switch_environment(issuer.company_id, args.ambiente):
        print(f"Ambiente cambiado a {args.ambiente}; consecutivos reiniciados.")
    else:
        print(f"El ambiente ya era {args.ambiente}.")
    return 0


def _cmd_docs(args: argparse.Namespace) -> int:
    from facturador.utils.formatters import format_amount
    from facturador.utils.registry import list_documents

    entries = list_documents(args.env)
    if not entries:
        print("Sin documentos registrados.")
        return 0
    for e in entries:
        total = format_amount(e["total"], e.get("moneda", "CRC")) if e.get("total") else "-"
        print(f"{e['consecutivo']}  {e['status']:<10} {e['env']:<10} {total:>18}  {e.get('receptor', '')}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    from facturador.config import ENVIRONMENTS

    parser = argparse.ArgumentParser(
        prog="facturador", description="Comprobantes electronicos v4.4 para Hacienda"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="mostrar bitacora")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="crear archivos de configuracion de ejemplo")

    emitir = sub.add_parser("emitir", help="generar un comprobante desde un borrador YAML")
    emitir.add_argument("borrador")
    emitir.add_argument(
        "--env", choices=ENVIRONMENTS, help="debe coincidir con el ambiente actual (por defecto, el actual)"
    )
    emitir.add_argument("--dry-run", action="store_true", help="mostrar el XML sin consumir consecutivo")

    consecutivo = sub.add_parser("consecutivo", help="mostrar los contadores actuales")
    consecutivo.add_argument("--env", choices=ENVIRONMENTS)

    ambiente = sub.add_parser("ambiente", help="cambiar de ambiente (reinicia consecutivos)")
    ambiente.add_argument("ambiente", choices=ENVIRONMENTS)

    docs = sub.add_parser("docs", help="listar documentos emitidos")
    docs.add_argument("--env", choices=ENVIRONMENTS)
    return parser


_COMMANDS = {
    "emitir": _cmd_emitir,
    "consecutivo": _cmd_consecutivo,
    "ambiente": _cmd_ambiente,
    "docs": _cmd_docs,
}


def main(argv: list[str] | None = None) -> None:
    """Entry point for the facturador CLI."""
    args = _build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.command == "init":
        _init_config()
        return

    if not _preflight():
        sys.exit(1)

    from facturador.services.exceptions import FacturadorError

    try:
        code = _COMMANDS[args.command](args)
    except FacturadorError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
