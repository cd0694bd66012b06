"""Logging setup and misc helpers."""

import logging
import os
from pathlib import Path

import coloredlogs
from eth_typing import HexAddress
from web3 import Web3


def setup_console_logging(
    default_log_level="info",
    log_file: Path | None = None,
    clear_log_file=True,
) -> logging.Logger:
    """Set up coloured log output for the deployment scripts.

    - ``LOG_LEVEL`` environment variable overrides the default level
    - Tune down some noisy dependency library logging

    :param log_file:
        Output both console and this log file.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert numeric_level, f"No level: {level}"

    fmt = "%(asctime)s %(name)-34s %(message)s"
    date_fmt = "%H:%M:%S"

    coloredlogs.install(level=numeric_level, fmt=fmt, datefmt=date_fmt)

    if log_file:
        assert isinstance(log_file, Path), "log_file must be a Path"

        log_file.parent.mkdir(parents=True, exist_ok=True)

        # The file always gets INFO, env var controls only terminal output
        min_level = min(logging.INFO, numeric_level)
        file_handler = logging.FileHandler(log_file, mode="w" if clear_log_file else "a", encoding="utf-8")
        file_handler.setLevel(min_level)
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))

        root = logging.getLogger()
        root.setLevel(min_level)
        root.addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    logging.getLogger("filelock").setLevel(logging.WARNING)
    return logging.getLogger()


def convert_to_coupon_id(token: HexAddress, epoch: int) -> int:
    """Get the ERC-1155 id of a coupon.

    The epoch goes to the bits above the 160 bits of the token address.
    """
    assert type(epoch) == int and 0 <= epoch < 2**16, f"Bad epoch: {epoch}"
    return (epoch << 160) | int(Web3.to_checksum_address(token), 16)


def format_decimal_units(value: int, decimals: int, ignore_trailing_zeros=False) -> str:
    """Format raw token units as a decimal string.

    .. code-block:: python

        assert format_decimal_units(1_500_000, 6) == "1.500000"
        assert format_decimal_units(1_500_000, 6, ignore_trailing_zeros=True) == "1.5"

    :param value:
        Raw integer amount

    :param decimals:
        Token decimals
    """
    assert type(value) == int, f"Got {type(value)}"
    assert type(decimals) == int and decimals >= 0, f"Bad decimals: {decimals}"

    if decimals == 0:
        return str(value)

    # Pad so there is always at least one digit before the decimal point
    digits = str(abs(value)).rjust(decimals + 1, "0")
    sign = "-" if value < 0 else ""
    result = f"{sign}{digits[:-decimals]}.{digits[-decimals:]}"

    if ignore_trailing_zeros:
        result = result.rstrip("0").rstrip(".")

    return result
