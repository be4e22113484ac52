# src/kvcore/storage/identifiers.py
"""
Identifier quoting for generated SQL.

Table, schema and index names cannot be bound as statement parameters, so
they are interpolated after quoting. Data values never go through here; they
are always passed as bound parameters.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class IdentifierQuoter:
    """Quotes identifiers for one SQL dialect."""

    quote: str
    separator: str = "."

    def segment(self, name: str) -> str:
        """Quote a single identifier segment, doubling embedded quote characters."""
        return f"{self.quote}{name.replace(self.quote, self.quote * 2)}{self.quote}"

    def __call__(self, identifier: str) -> str:
        """Quote a possibly qualified identifier such as ``schema.table``."""
        return self.separator.join(self.segment(part) for part in identifier.split(self.separator))


quote_postgres = IdentifierQuoter('"')
quote_mysql = IdentifierQuoter("`")
quote_sqlite = IdentifierQuoter('"')


def escape_identifier(identifier: str, dialect: str) -> str:
    """
    Quote ``identifier`` for ``dialect`` ("postgres", "mysql" or "sqlite").

    Raises:
        ValueError: For an unknown dialect.
    """
    quoters = {"postgres": quote_postgres, "mysql": quote_mysql, "sqlite": quote_sqlite}
    try:
        quoter = quoters[dialect]
    except KeyError:
        raise ValueError(f"Unsupported SQL dialect: {dialect}") from None
    return quoter(identifier)
