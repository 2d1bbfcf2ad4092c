"""
Command-line interface for the CoinJoin mixer.

A round runs in three steps over a shared data directory:

    cj-mixer dump-utxos   participants write their UTXO snapshots
    cj-mixer build        the mixer builds the joint PSBT into psbt.txt
    cj-mixer sign         every wallet signs, copies are merged and finalized
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Annotated

import typer
from cjcore.errors import CoinJoinError
from cjcore.models import NetworkType
from cjwallet.backends.base import ChainBackend
from cjwallet.backends.bitcoin_core import BitcoinCoreBackend
from cjwallet.wallet.service import Wallet
from loguru import logger

from mixer.builder import build_coinjoin_psbt
from mixer.config import MixerConfig, Settings, get_settings
from mixer.participants import (
    collect_foreign_inputs,
    public_wallets,
    signing_wallets,
    snapshot_utxo,
)
from mixer.protocol import extract, finalize, merge_all, sign_all
from mixer.snapshots import (
    DataDir,
    UtxoRecord,
    read_mixer_mnemonic,
    read_mnemonics,
    read_psbt,
    read_utxo_snapshots,
    write_psbt,
    write_utxo_snapshot,
)

app = typer.Typer(
    name="cj-mixer",
    help="CoinJoin mixer - build, sign and merge joint transactions",
    add_completion=False,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def create_backend(settings: Settings) -> ChainBackend:
    return BitcoinCoreBackend(
        rpc_url=settings.rpc_url,
        rpc_user=settings.rpc_user,
        rpc_password=settings.rpc_password,
    )


def load_settings(
    data_dir: Path | None, network: str | None, log_level: str | None
) -> Settings:
    """Environment settings with command line overrides applied."""
    settings = get_settings()
    overrides: dict = {}
    if data_dir is not None:
        overrides["data_dir"] = data_dir
    if network is not None:
        overrides["network"] = NetworkType(network).value
    if log_level is not None:
        overrides["log_level"] = log_level
    return settings.model_copy(update=overrides)


def _run(coro) -> None:
    """Run a command body, turning expected failures into exit status 1."""
    try:
        asyncio.run(coro)
    except (CoinJoinError, ValueError, FileNotFoundError) as e:
        logger.error(str(e))
        raise typer.Exit(1)


DataDirOption = Annotated[
    Path | None, typer.Option("--data-dir", "-d", help="Data directory (default: DATA_DIR)")
]
NetworkOption = Annotated[
    str | None,
    typer.Option("--network", "-n", help="mainnet | testnet | signet | regtest (default: NETWORK)"),
]
LogLevelOption = Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")]
AccountOption = Annotated[int, typer.Option("--account", help="BIP84 account")]
MinConfOption = Annotated[
    int, typer.Option("--min-confirmations", help="Minimum confirmations of spent UTXOs")
]


def _settings_or_exit(
    data_dir: Path | None, network: str | None, log_level: str | None
) -> Settings:
    try:
        settings = load_settings(data_dir, network, log_level)
    except ValueError as e:
        setup_logging(log_level or "INFO")
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)
    setup_logging(settings.log_level)
    return settings


@app.command("dump-utxos")
def dump_utxos(
    data_dir: DataDirOption = None,
    network: NetworkOption = None,
    account: AccountOption = 0,
    min_confirmations: MinConfOption = 1,
    log_level: LogLevelOption = None,
) -> None:
    """Write the UTXO each participant offers to client/utxos/<n>.json."""
    settings = _settings_or_exit(data_dir, network, log_level)
    _run(_dump_utxos(settings, account, min_confirmations))


async def _dump_utxos(settings: Settings, account: int, min_confirmations: int) -> None:
    data = DataDir(settings.data_dir)
    mnemonics = read_mnemonics(data.client_mnemonic_dir)
    backend = create_backend(settings)

    try:
        wallets = signing_wallets(mnemonics, backend, settings.network, account)
        for i, wallet in enumerate(wallets):
            await wallet.sync()
            balance = await wallet.balance()
            logger.info(f"{wallet.name} {wallet.peek_address(0)} has {balance:,} sats")

            utxo = snapshot_utxo(wallet, min_confirmations)
            if utxo is None:
                logger.warning(f"{wallet.name} has no confirmed UTXO on its shared key, skipping")
                continue
            write_utxo_snapshot(UtxoRecord.from_utxo(utxo), data.client_utxo_dir / f"{i}.json")
    finally:
        await backend.close()


@app.command()
def build(
    data_dir: DataDirOption = None,
    network: NetworkOption = None,
    denomination: Annotated[
        int, typer.Option("--denomination", "-D", help="Sats paid by every output")
    ] = 5_000,
    output_count: Annotated[
        int, typer.Option("--output-count", "-N", help="Number of equal outputs")
    ] = 5,
    fee_rate: Annotated[int, typer.Option("--fee-rate", "-r", help="Fee rate in sat/vB")] = 10,
    dust_threshold: Annotated[
        int, typer.Option("--dust-threshold", help="Smallest change output in sats")
    ] = 546,
    account: AccountOption = 0,
    min_confirmations: MinConfOption = 1,
    log_level: LogLevelOption = None,
) -> None:
    """Build the joint PSBT and write it to psbt.txt."""
    settings = _settings_or_exit(data_dir, network, log_level)
    try:
        config = MixerConfig(
            network=NetworkType(settings.network),
            denomination=denomination,
            output_count=output_count,
            fee_rate=fee_rate,
            dust_threshold=dust_threshold,
            account=account,
            min_confirmations=min_confirmations,
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)

    _run(_build(settings, config))


async def _build(settings: Settings, config: MixerConfig) -> None:
    data = DataDir(settings.data_dir)
    mixer_mnemonic = read_mixer_mnemonic(data)
    mnemonics = read_mnemonics(data.client_mnemonic_dir)
    records = read_utxo_snapshots(data.client_utxo_dir)
    backend = create_backend(settings)

    try:
        mixer = Wallet.from_mnemonic(
            mixer_mnemonic,
            backend,
            config.network,
            config.account,
            gap_limit=config.gap_limit,
            name="mixer",
        )
        await mixer.sync()
        balance = await mixer.balance()
        logger.info(f"Mixer {mixer.peek_address(0)} has {balance:,} sats")

        foreign_inputs = collect_foreign_inputs(
            records, public_wallets(mnemonics, config.network, config.account)
        )
        psbt = build_coinjoin_psbt(
            mixer,
            config.denomination,
            config.output_count,
            config.fee_rate,
            foreign_inputs,
            dust_threshold=config.dust_threshold,
            min_confirmations=config.min_confirmations,
        )
        write_psbt(psbt, data.psbt_path)
        typer.echo(psbt.txid)
    finally:
        await backend.close()


@app.command()
def sign(
    data_dir: DataDirOption = None,
    network: NetworkOption = None,
    account: AccountOption = 0,
    broadcast: Annotated[
        bool, typer.Option("--broadcast", help="Relay the final transaction")
    ] = False,
    log_level: LogLevelOption = None,
) -> None:
    """Sign psbt.txt with every wallet, merge, finalize and print the transaction hex."""
    settings = _settings_or_exit(data_dir, network, log_level)
    _run(_sign(settings, account, broadcast))


async def _sign(settings: Settings, account: int, broadcast: bool) -> None:
    data = DataDir(settings.data_dir)
    psbt = read_psbt(data.psbt_path)
    mnemonics = read_mnemonics(data.client_mnemonic_dir)
    mixer_mnemonic = read_mixer_mnemonic(data)
    backend = create_backend(settings)

    try:
        wallets = signing_wallets(mnemonics, backend, settings.network, account)
        mixer = Wallet.from_mnemonic(
            mixer_mnemonic, backend, settings.network, account, name="mixer"
        )
        wallets.append(mixer)

        outcomes = await sign_all(psbt, wallets)
        for outcome in outcomes:
            if outcome.ok:
                logger.info(f"Sign status of {outcome.wallet_name}: {outcome.result}")
            else:
                logger.warning(f"{outcome.wallet_name} did not sign: {outcome.error}")

        merged = merge_all([outcome.psbt for outcome in outcomes if outcome.ok])
        # Keep the merged signatures on disk so a failed finalize can be resumed
        write_psbt(merged, data.psbt_path)

        finalized = finalize(merged)
        write_psbt(finalized, data.psbt_path)

        tx = extract(finalized)
        logger.info(f"Final transaction {tx.txid}: {tx.vsize} vB, fee {finalized.fee()} sats")
        typer.echo(tx.serialize_hex())

        if broadcast:
            txid = await mixer.broadcast(tx)
            logger.info(f"Broadcast {txid}")
    finally:
        await backend.close()


@app.command()
def info(
    data_dir: DataDirOption = None,
    network: NetworkOption = None,
    account: AccountOption = 0,
    log_level: LogLevelOption = None,
) -> None:
    """Show the mixer and participant wallets with their balances."""
    settings = _settings_or_exit(data_dir, network, log_level)
    _run(_show_info(settings, account))


async def _show_info(settings: Settings, account: int) -> None:
    data = DataDir(settings.data_dir)
    backend = create_backend(settings)

    try:
        wallets = [
            Wallet.from_mnemonic(
                read_mixer_mnemonic(data), backend, settings.network, account, name="mixer"
            )
        ]
        if data.client_mnemonic_dir.is_dir():
            wallets += signing_wallets(
                read_mnemonics(data.client_mnemonic_dir), backend, settings.network, account
            )

        typer.echo(f"\nNetwork: {settings.network}")
        for wallet in wallets:
            await wallet.sync()
            balance = await wallet.balance()
            typer.echo(
                f"  {wallet.name:<16} {balance:>15,} sats  |  {wallet.peek_address(0)}  "
                f"({len(wallet.list_unspent())} UTXOs)"
            )
    finally:
        await backend.close()


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
