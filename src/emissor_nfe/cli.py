from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from collections.abc import Sequence
from importlib.resources import files
from pathlib import Path

from emissor_nfe.config import (
    AMBIENTE_NAMES,
    get_config_dir,
    get_data_dir,
    get_user_id,
    load_yaml,
)
from emissor_nfe.models.certificate import User
from emissor_nfe.models.emitter import Emitter
from emissor_nfe.services import certificates, invoices
from emissor_nfe.services.emission import emit
from emissor_nfe.services.exceptions import StorageError
from emissor_nfe.storage.json_storage import JsonStorage
from emissor_nfe.utils.access_key import format_access_key
from emissor_nfe.utils.certificate import read_pfx_file
from emissor_nfe.utils.formatters import format_brl

logger = logging.getLogger(__name__)

TEMPLATES = ("emitter.yaml.example", "invoice.yaml.example")


def _init_config(storage: JsonStorage, user_id: int) -> int:
    """Copy bundled templates to the config dir and create the local user."""
    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("emissor_nfe") / "templates"

    config_dir.mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    for name in TEMPLATES:
        dest = config_dir / name
        if dest.exists():
            print(f"  já existe: {dest}")
            continue
        dest.write_bytes((templates / name).read_bytes())
        print(f"  criado: {dest}")

    if storage.get_user(user_id) is None:
        storage.create_user(User(username=f"usuario{user_id}", name="Usuário local", id=user_id))

    print()
    print(f"Configuração: {config_dir}")
    print(f"Dados:   {data_dir}")
    print()
    print("Próximos passos:")
    print(f"  1. Edite {config_dir / 'emitter.yaml.example'} e rode: emissor-nfe emitente <arquivo>")
    print("  2. emissor-nfe certificado <arquivo.pfx>")
    print(f"  3. Edite {config_dir / 'invoice.yaml.example'} e rode: emissor-nfe nova <arquivo>")
    return 0


def _cmd_emitente(args: argparse.Namespace, storage: JsonStorage, user_id: int) -> int:
    emitter = Emitter.from_dict(load_yaml(args.arquivo)).validate()
    saved = storage.save_emitter(user_id, emitter)
    print(f"Emitente salvo: {saved.razao_social} ({saved.cnpj}) - {saved.uf}")
    return 0


def _cmd_certificado(args: argparse.Namespace, storage: JsonStorage, user_id: int) -> int:
    password = args.senha if args.senha is not None else getpass.getpass("Senha do certificado: ")
    saved = certificates.upload_certificate(
        storage, user_id, read_pfx_file(args.arquivo), password, name=args.nome
    )
    print(f"Certificado ativo: {saved.name} (válido até {saved.expires_at})")
    return 0


def _cmd_certificados(args: argparse.Namespace, storage: JsonStorage, user_id: int) -> int:
    certs = certificates.list_certificates(storage, user_id)
    if not certs:
        print("Nenhum certificado cadastrado.")
        return 0
    for cert in certs:
        marker = "*" if cert.active else " "
        print(f"{marker} {cert.id:>4}  {cert.name}  validade: {cert.expires_at or '-'}")
    return 0


def _load_invoice_file(path: str) -> tuple[dict, list[dict]]:
    data = load_yaml(Path(path))
    nota = data.get("nota")
    itens = data.get("itens")
    if not isinstance(nota, dict) or not isinstance(itens, list):
        raise ValueError("Arquivo da nota deve conter as chaves 'nota' (mapeamento) e 'itens' (lista)")
    return nota, itens


def _cmd_nova(args: argparse.Namespace, storage: JsonStorage, user_id: int) -> int:
    nota, itens = _load_invoice_file(args.arquivo)
    created = invoices.create_invoice(storage, user_id, nota, itens)
    print(f"Nota {created.id} criada: numero {created.numero}, total {format_brl(created.total_nota)}")
    return 0


def _cmd_editar(args: argparse.Namespace, storage: JsonStorage, user_id: int) -> int:
    nota, itens = _load_invoice_file(args.arquivo)
    edited = invoices.edit_invoice(storage, user_id, args.id, nota, itens)
    print(f"Nota {edited.id} atualizada (status {edited.status})")
    return 0


def _cmd_listar(args: argparse.Namespace, storage: JsonStorage, user_id: int) -> int:
    rows = storage.list_invoices(user_id)
    if not rows:
        print("Nenhuma nota cadastrada.")
        return 0
    for inv in rows:
        print(
            f"{inv.id:>4}  {inv.numero}  {inv.data_emissao}  {inv.status:<16}"
            f"{format_brl(inv.total_nota):>16}  {inv.dest_nome}"
        )
    return 0


def _cmd_emitir(args: argparse.Namespace, storage: JsonStorage, user_id: int) -> int:
    print(f"Emitindo nota {args.id} em {AMBIENTE_NAMES[args.ambiente]}…", file=sys.stderr)
    result = emit(storage, user_id, args.id, args.ambiente, force=args.forcar)
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    if result.chave_acesso:
        print(f"Chave: {format_access_key(result.chave_acesso)}", file=sys.stderr)
    return 0 if result.success else 1


def _cmd_xml(args: argparse.Namespace, storage: JsonStorage, user_id: int) -> int:
    xml = invoices.get_invoice_xml(storage, user_id, args.id)
    if args.output:
        Path(args.output).write_text(xml, encoding="utf-8")
        print(f"XML salvo em {args.output}", file=sys.stderr)
    else:
        print(xml)
    return 0


def _cmd_excluir(args: argparse.Namespace, storage: JsonStorage, user_id: int) -> int:
    if not invoices.delete_invoice(storage, user_id, args.id):
        print(f"Nota {args.id} não encontrada.", file=sys.stderr)
        return 1
    print(f"Nota {args.id} excluída.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="emissor-nfe", description="Emissor de NF-e (modelo 55)")
    parser.add_argument("-v", "--verbose", action="store_true", help="log detalhado")
    sub = parser.add_subparsers(dest="command", metavar="comando")
    sub.required = True

    sub.add_parser("init", help="cria diretórios e arquivos de exemplo")

    p = sub.add_parser("emitente", help="cadastra/atualiza o emitente a partir de um YAML")
    p.add_argument("arquivo", type=Path)
    p.set_defaults(handler=_cmd_emitente)

    p = sub.add_parser("certificado", help="instala o certificado A1 (.pfx/.p12)")
    p.add_argument("arquivo", type=Path)
    p.add_argument("--senha", default=None, help="senha do .pfx (pergunta se omitida)")
    p.add_argument("--nome", default=None)
    p.set_defaults(handler=_cmd_certificado)

    p = sub.add_parser("certificados", help="lista os certificados cadastrados")
    p.set_defaults(handler=_cmd_certificados)

    p = sub.add_parser("nova", help="cria uma nota em rascunho a partir de um YAML")
    p.add_argument("arquivo")
    p.set_defaults(handler=_cmd_nova)

    p = sub.add_parser("editar", help="substitui dados e itens de uma nota")
    p.add_argument("id", type=int)
    p.add_argument("arquivo")
    p.set_defaults(handler=_cmd_editar)

    p = sub.add_parser("listar", help="lista as notas")
    p.set_defaults(handler=_cmd_listar)

    p = sub.add_parser("emitir", help="assina e transmite a nota para a SEFAZ")
    p.add_argument("id", type=int)
    p.add_argument("--ambiente", choices=("1", "2"), default="2", help="1=produção, 2=homologação")
    p.add_argument(
        "--forcar", action="store_true", help="reenvia uma nota presa em processamento"
    )
    p.set_defaults(handler=_cmd_emitir)

    p = sub.add_parser("xml", help="exibe ou salva o XML da nota")
    p.add_argument("id", type=int)
    p.add_argument("-o", "--output", default=None)
    p.set_defaults(handler=_cmd_xml)

    p = sub.add_parser("excluir", help="remove uma nota")
    p.add_argument("id", type=int)
    p.set_defaults(handler=_cmd_excluir)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the emissor-nfe CLI."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    storage = JsonStorage()
    user_id = get_user_id()
    try:
        if args.command == "init":
            return _init_config(storage, user_id)
        return args.handler(args, storage, user_id)
    except (ValueError, StorageError, OSError) as exc:
        logger.debug("Comando %s falhou", args.command, exc_info=True)
        print(f"Erro: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
