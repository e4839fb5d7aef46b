from __future__ import annotations

import re
from datetime import date
from decimal import Decimal, InvalidOperation

from emissor_nfe.utils.formatters import dec2, dec4

_CNPJ_WEIGHTS_1 = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_WEIGHTS_2 = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)

_VALID_CST_PIS_COFINS = frozenset({
    "01", "02", "03", "04", "05", "06", "07", "08", "09",
    "49", "50", "51", "52", "53", "54", "55", "56",
    "60", "61", "62", "63", "64", "65", "66", "67",
    "70", "71", "72", "73", "74", "75",
    "98", "99",
})

_VALID_CSOSN = frozenset({"101", "102", "103", "201", "202", "203", "300", "400", "500", "900"})


def only_digits(value: str | None) -> str:
    """Strip every non-digit character (masks, dots, slashes, dashes)."""
    return re.sub(r"\D", "", value or "")


def is_valid_cpf(cpf: str) -> bool:
    """Check a CPF with the double mod-11 check digit. Masks are ignored."""
    digits = only_digits(cpf)
    if len(digits) != 11 or digits == digits[0] * 11:
        return False
    nums = [int(c) for c in digits]
    for size in (9, 10):
        total = sum(n * (size + 1 - i) for i, n in enumerate(nums[:size]))
        check = 11 - total % 11
        if check >= 10:
            check = 0
        if nums[size] != check:
            return False
    return True


def _cnpj_digit(nums: list[int], weights: tuple[int, ...]) -> int:
    remainder = sum(n * w for n, w in zip(nums, weights)) % 11
    return 0 if remainder < 2 else 11 - remainder


def is_valid_cnpj(cnpj: str) -> bool:
    """Check a CNPJ with the weighted double mod-11 check digit. Masks are ignored."""
    digits = only_digits(cnpj)
    if len(digits) != 14 or digits == digits[0] * 14:
        return False
    nums = [int(c) for c in digits]
    if nums[12] != _cnpj_digit(nums[:12], _CNPJ_WEIGHTS_1):
        return False
    return nums[13] == _cnpj_digit(nums[:13], _CNPJ_WEIGHTS_2)


def validate_cnpj(value: str, label: str = "CNPJ") -> str:
    """Return the digits-only CNPJ or raise ValueError."""
    if not is_valid_cnpj(value):
        raise ValueError(f"{label} inválido: {value}. Verifique os dígitos verificadores.")
    return only_digits(value)


def validate_cpf(value: str, label: str = "CPF") -> str:
    """Return the digits-only CPF or raise ValueError."""
    if not is_valid_cpf(value):
        raise ValueError(f"{label} inválido: {value}. Verifique os dígitos verificadores.")
    return only_digits(value)


def validate_cpf_cnpj(value: str, label: str = "do destinatário") -> str:
    """Validate a tax id, choosing CNPJ when it has more than 11 digits."""
    digits = only_digits(value)
    if len(digits) > 11:
        return validate_cnpj(value, f"CNPJ {label}")
    return validate_cpf(value, f"CPF {label}")


def validate_monetary(value: str | None, field: str = "Valor") -> str:
    """Validate and normalize a non-negative monetary value string.

    Empty values count as zero. Returns exactly 2 decimal places.
    """
    raw = "0" if value is None or str(value).strip() == "" else str(value).strip()
    try:
        d = Decimal(raw)
        if not d.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise ValueError(f"{field}: valor numerico invalido '{value}'") from None
    if d < 0:
        raise ValueError(f"{field}: valor nao pode ser negativo '{value}'")
    return dec2(d)


def validate_quantity(value: str, field: str = "Quantidade") -> str:
    """Validate a strictly positive quantity, normalized to 4 decimal places."""
    try:
        d = Decimal(str(value).strip())
        if not d.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise ValueError(f"{field}: valor numerico invalido '{value}'") from None
    if d <= 0:
        raise ValueError(f"{field}: deve ser positivo '{value}'")
    return dec4(d)


def validate_date(value: str) -> str:
    """Validate an ISO (YYYY-MM-DD) or Brazilian (DD/MM/YYYY) date string."""
    try:
        if "/" in value:
            day, month, year = value.split("/")
            date(int(year), int(month), int(day))
        else:
            date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"Data invalida: '{value}'. Use YYYY-MM-DD ou DD/MM/YYYY.") from None
    return value


def validate_time(value: str) -> str:
    """Validate a HH:MM or HH:MM:SS time, returned as HH:MM:SS."""
    m = re.fullmatch(r"([01]\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?", value or "")
    if not m:
        raise ValueError(f"Hora invalida: '{value}'. Use HH:MM:SS.")
    return f"{m.group(1)}:{m.group(2)}:{m.group(3) or '00'}"


def validate_ncm(value: str) -> str:
    """Validate NCM: 8 digits once the mask is removed."""
    digits = only_digits(value)
    if len(digits) != 8:
        raise ValueError(f"NCM: deve ter 8 digitos numericos ('{value}')")
    return digits


def validate_cfop(value: str) -> str:
    """Validate CFOP: exactly 4 digits, first digit 1-7."""
    digits = only_digits(value)
    if not re.fullmatch(r"[1-7]\d{3}", digits):
        raise ValueError(f"CFOP: deve ter 4 digitos numericos ('{value}')")
    return digits


def validate_csosn(value: str) -> str:
    if value not in _VALID_CSOSN:
        raise ValueError(f"CSOSN: codigo invalido ('{value}')")
    return value


def validate_cst_pis_cofins(value: str) -> str:
    """Validate CST PIS/COFINS against known valid codes."""
    if value not in _VALID_CST_PIS_COFINS:
        raise ValueError("CST PIS/COFINS: codigo invalido")
    return value


def validate_access_key(value: str) -> str:
    """Validate an NF-e access key: 44 digits with a matching check digit."""
    from emissor_nfe.utils.access_key import calc_check_digit

    if not re.fullmatch(r"\d{44}", value):
        raise ValueError("Chave de acesso: deve ter exatamente 44 digitos")
    if calc_check_digit(value[:43]) != value[43]:
        raise ValueError("Chave de acesso: digito verificador invalido")
    return value
