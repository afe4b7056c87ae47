"""Currency registry: ISO 4217 codes and their minor-unit precision."""

from dataclasses import dataclass
from typing import ClassVar


@dataclass(frozen=True)
class CurrencyInfo:
    code: str
    decimal_places: int
    name: str

    @property
    def minor_per_major(self) -> int:
        return 10**self.decimal_places


class CurrencyRegistry:
    """
    Known currencies with their decimal places.

    Most currencies use two decimal places; the table lists the common ones
    plus every zero- and three-decimal currency, since those are the ones
    that break naive cent arithmetic.
    """

    _CURRENCIES: ClassVar[dict[str, CurrencyInfo]] = {
        info.code: info
        for info in (
            CurrencyInfo("USD", 2, "US Dollar"),
            CurrencyInfo("EUR", 2, "Euro"),
            CurrencyInfo("GBP", 2, "Pound Sterling"),
            CurrencyInfo("CHF", 2, "Swiss Franc"),
            CurrencyInfo("CAD", 2, "Canadian Dollar"),
            CurrencyInfo("AUD", 2, "Australian Dollar"),
            CurrencyInfo("NZD", 2, "New Zealand Dollar"),
            CurrencyInfo("CNY", 2, "Chinese Yuan"),
            CurrencyInfo("INR", 2, "Indian Rupee"),
            CurrencyInfo("PKR", 2, "Pakistani Rupee"),
            CurrencyInfo("BDT", 2, "Bangladeshi Taka"),
            CurrencyInfo("AED", 2, "UAE Dirham"),
            CurrencyInfo("SAR", 2, "Saudi Riyal"),
            CurrencyInfo("SGD", 2, "Singapore Dollar"),
            CurrencyInfo("HKD", 2, "Hong Kong Dollar"),
            CurrencyInfo("MXN", 2, "Mexican Peso"),
            CurrencyInfo("BRL", 2, "Brazilian Real"),
            CurrencyInfo("ZAR", 2, "South African Rand"),
            CurrencyInfo("SEK", 2, "Swedish Krona"),
            CurrencyInfo("NOK", 2, "Norwegian Krone"),
            CurrencyInfo("DKK", 2, "Danish Krone"),
            CurrencyInfo("PLN", 2, "Polish Zloty"),
            CurrencyInfo("TRY", 2, "Turkish Lira"),
            CurrencyInfo("JPY", 0, "Japanese Yen"),
            CurrencyInfo("KRW", 0, "South Korean Won"),
            CurrencyInfo("VND", 0, "Vietnamese Dong"),
            CurrencyInfo("CLP", 0, "Chilean Peso"),
            CurrencyInfo("ISK", 0, "Icelandic Krona"),
            CurrencyInfo("PYG", 0, "Paraguayan Guarani"),
            CurrencyInfo("UGX", 0, "Ugandan Shilling"),
            CurrencyInfo("XAF", 0, "Central African CFA Franc"),
            CurrencyInfo("XOF", 0, "West African CFA Franc"),
            CurrencyInfo("BHD", 3, "Bahraini Dinar"),
            CurrencyInfo("IQD", 3, "Iraqi Dinar"),
            CurrencyInfo("JOD", 3, "Jordanian Dinar"),
            CurrencyInfo("KWD", 3, "Kuwaiti Dinar"),
            CurrencyInfo("LYD", 3, "Libyan Dinar"),
            CurrencyInfo("OMR", 3, "Omani Rial"),
            CurrencyInfo("TND", 3, "Tunisian Dinar"),
        )
    }

    @classmethod
    def is_valid(cls, code: str) -> bool:
        return isinstance(code, str) and code.upper() in cls._CURRENCIES

    @classmethod
    def get(cls, code: str) -> CurrencyInfo:
        """Look up a currency.  Raises ValueError for unknown codes."""
        info = cls._CURRENCIES.get(code.upper()) if isinstance(code, str) else None
        if info is None:
            raise ValueError(f"Unknown ISO 4217 currency code: {code!r}")
        return info

    @classmethod
    def get_decimal_places(cls, code: str) -> int:
        return cls.get(code).decimal_places

    @classmethod
    def register(cls, info: CurrencyInfo) -> None:
        """Add or replace a currency (e.g. a local unit of account)."""
        cls._CURRENCIES[info.code.upper()] = info
