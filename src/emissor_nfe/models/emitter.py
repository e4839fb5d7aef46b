from __future__ import annotations

from dataclasses import asdict, dataclass

from emissor_nfe.utils.access_key import UF_CODES
from emissor_nfe.utils.validators import is_valid_cnpj, only_digits

REGIMES_TRIBUTARIOS = frozenset({"1", "2", "3"})  # 1 = Simples Nacional, 3 = regime normal


@dataclass(frozen=True)
class Emitter:
    """Emitter (emitente): the merchant issuing the NF-e. One per user account."""

    razao_social: str
    cnpj: str
    cep: str
    uf: str
    municipio: str
    bairro: str
    logradouro: str
    numero: str
    nome_fantasia: str | None = None
    inscricao_estadual: str | None = None
    inscricao_municipal: str | None = None
    regime_tributario: str = "1"
    complemento: str | None = None
    telefone: str | None = None
    email: str | None = None
    codigo_municipio: str | None = None  # IBGE, 7 digits
    id: int | None = None
    user_id: int | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Emitter:
        """Create an Emitter from a stored or YAML-loaded dict, applying defaults."""

        def opt(key: str) -> str | None:
            value = d.get(key)
            return None if value in (None, "") else str(value)

        return cls(
            razao_social=d["razao_social"],
            cnpj=str(d["cnpj"]),
            cep=str(d["cep"]),
            uf=str(d["uf"]).upper(),
            municipio=d["municipio"],
            bairro=d["bairro"],
            logradouro=d["logradouro"],
            numero=str(d["numero"]),
            nome_fantasia=opt("nome_fantasia"),
            inscricao_estadual=opt("inscricao_estadual"),
            inscricao_municipal=opt("inscricao_municipal"),
            regime_tributario=str(d.get("regime_tributario") or "1"),
            complemento=opt("complemento"),
            telefone=opt("telefone"),
            email=opt("email"),
            codigo_municipio=opt("codigo_municipio"),
            id=d.get("id"),
            user_id=d.get("user_id"),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def ie_isento(self) -> bool:
        """True when the state registration is empty or the literal ISENTO."""
        return (self.inscricao_estadual or "").strip().upper() in ("", "ISENTO")

    def validate(self) -> Emitter:
        """Raise ValueError when the emitter cannot sign NF-e documents."""
        if not is_valid_cnpj(self.cnpj):
            raise ValueError(f"CNPJ do emitente inválido: {self.cnpj}")
        if self.uf not in UF_CODES:
            raise ValueError(f"UF do emitente desconhecida: {self.uf}")
        if self.regime_tributario not in REGIMES_TRIBUTARIOS:
            raise ValueError(f"Regime tributario invalido: {self.regime_tributario} (use 1, 2 ou 3)")
        if self.codigo_municipio and len(only_digits(self.codigo_municipio)) != 7:
            raise ValueError("Codigo do municipio (IBGE) deve ter 7 digitos")
        return self
