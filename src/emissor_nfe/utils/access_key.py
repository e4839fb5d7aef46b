from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime

UF_CODES = {
    "AC": "12", "AL": "27", "AP": "16", "AM": "13", "BA": "29", "CE": "23", "DF": "53",
    "ES": "32", "GO": "52", "MA": "21", "MT": "51", "MS": "50", "MG": "31", "PA": "15",
    "PB": "25", "PR": "41", "PE": "26", "PI": "22", "RJ": "33", "RN": "24", "RS": "43",
    "RO": "11", "RR": "14", "SC": "42", "SP": "35", "SE": "28", "TO": "17",
}

_WEIGHTS = (2, 3, 4, 5, 6, 7, 8, 9)


def get_uf_code(uf: str) -> str:
    """Return the 2-digit IBGE code of a UF. Raises ValueError if unknown."""
    try:
        return UF_CODES[uf.upper()]
    except KeyError:
        raise ValueError(f"UF desconhecida: '{uf}'") from None


def parse_date(value: str) -> datetime:
    """Parse YYYY-MM-DD or DD/MM/YYYY. Malformed input raises ValueError."""
    fmt = "%d/%m/%Y" if "/" in value else "%Y-%m-%d"
    return datetime.strptime(value, fmt)


def calc_check_digit(chave43: str) -> str:
    """Mod-11 check digit over the reversed digits with cyclic weights 2..9."""
    total = sum(int(d) * _WEIGHTS[i % len(_WEIGHTS)] for i, d in enumerate(reversed(chave43)))
    remainder = total % 11
    return "0" if remainder < 2 else str(11 - remainder)


def generate_codigo_numerico(numero: str | int | None = None) -> str:
    """Random 8-digit cNF, drawn fresh for each emission attempt.

    The code never equals the zero-padded invoice number (SEFAZ rejects it).
    """
    forbidden = str(int(numero)).zfill(8)[-8:] if numero is not None else None
    while True:
        code = str(secrets.randbelow(100_000_000)).zfill(8)
        if code != forbidden:
            return code


@dataclass(frozen=True)
class AccessKeyParams:
    uf: str
    data_emissao: str  # YYYY-MM-DD or DD/MM/YYYY
    cnpj: str
    serie: str
    numero: str
    codigo_numerico: str
    modelo: str = "55"
    tipo_emissao: str = "1"


def generate_access_key(params: AccessKeyParams) -> str:
    """Generate the 44-digit NF-e access key (chave de acesso).

    Format: cUF(2) + AAMM(4) + CNPJ(14) + mod(2) + serie(3) + nNF(9)
    + tpEmis(1) + cNF(8) + DV(1)
    """
    emissao = parse_date(params.data_emissao)
    parts = [
        get_uf_code(params.uf),
        emissao.strftime("%y%m"),
        re.sub(r"\D", "", params.cnpj).zfill(14),
        params.modelo.zfill(2),
        params.serie.zfill(3),
        str(params.numero).zfill(9),
        params.tipo_emissao,
        params.codigo_numerico.zfill(8),
    ]
    chave43 = "".join(parts)
    if not re.fullmatch(r"\d{43}", chave43):
        raise ValueError(f"Chave de acesso deve ter 43 digitos antes do DV, obtido: {chave43}")
    return chave43 + calc_check_digit(chave43)


def format_access_key(key: str) -> str:
    """Group the key in blocks of four digits for display."""
    return " ".join(key[i : i + 4] for i in range(0, len(key), 4))
