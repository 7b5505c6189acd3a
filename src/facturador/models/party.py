from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Identification:
    tipo: str  # 01 física, 02 jurídica, 03 DIMEX, 04 NITE
    numero: str


@dataclass(frozen=True)
class Location:
    provincia: str
    canton: str
    distrito: str
    otras_senas: str
    barrio: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Location:
        return cls(
            provincia=str(d["provincia"]),
            canton=str(d["canton"]).zfill(2),
            distrito=str(d["distrito"]).zfill(2),
            otras_senas=d.get("otras_senas", ""),
            barrio=d.get("barrio"),
        )


@dataclass(frozen=True)
class Phone:
    codigo_pais: str
    numero: str


@dataclass(frozen=True)
class Party:
    """Issuer (emisor) or receiver (receptor) of a fiscal document."""

    nombre: str
    identificacion: Identification
    nombre_comercial: str | None = None
    ubicacion: Location | None = None
    telefono: Phone | None = None
    correo: str | None = None
    actividad_economica: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Party:
        """Create a Party from a YAML-loaded dict, applying defaults for optional fields."""
        ident = d["identificacion"]
        ubicacion = d.get("ubicacion")
        telefono = d.get("telefono")
        return cls(
            nombre=d["nombre"],
            identificacion=Identification(
                tipo=str(ident["tipo"]).zfill(2),
                numero=str(ident["numero"]),
            ),
            nombre_comercial=d.get("nombre_comercial"),
            ubicacion=Location.from_dict(ubicacion) if ubicacion else None,
            telefono=(
                Phone(
                    codigo_pais=str(telefono.get("codigo_pais", "506")),
                    numero=str(telefono["numero"]),
                )
                if telefono
                else None
            ),
            correo=d.get("correo"),
            actividad_economica=(
                str(d["actividad_economica"]) if d.get("actividad_economica") else None
            ),
        )


@dataclass(frozen=True)
class Issuer:
    """Company-level settings for the issuing taxpayer (config/emisor.yaml)."""

    company_id: str
    party: Party
    terminal: str = "01"
    sucursal: str = "001"
    proveedor_sistemas: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Issuer:
        return cls(
            company_id=str(d.get("company_id") or d["identificacion"]["numero"]),
            party=Party.from_dict(d),
            terminal=str(d.get("terminal", "01")),
            sucursal=str(d.get("sucursal", "001")),
            proveedor_sistemas=d.get("proveedor_sistemas"),
        )
