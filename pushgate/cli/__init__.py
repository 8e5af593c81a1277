import json
import logging
import typing
from pathlib import Path

import anyio
import typer
from cryptography import x509
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from typing_extensions import Annotated

from pushgate import apns
from pushgate.apns import exceptions, protocol, transport

logging.basicConfig(level=logging.INFO, handlers=[RichHandler()], format="%(message)s")

app = typer.Typer()
console = Console()

PemOption = Annotated[
    Path,
    typer.Option(
        "--pem",
        envvar="PUSHGATE_PEM",
        exists=True,
        dir_okay=False,
        help="combined certificate chain + encrypted key PEM file",
    ),
]
PemArgument = Annotated[
    Path,
    typer.Argument(
        envvar="PUSHGATE_PEM",
        exists=True,
        dir_okay=False,
        help="combined certificate chain + encrypted key PEM file",
    ),
]
PassphraseOption = Annotated[
    str,
    typer.Option(
        envvar="PUSHGATE_PASSPHRASE",
        prompt=True,
        hide_input=True,
        help="passphrase for the private key",
    ),
]


def _parse_extra(values: typing.List[str]) -> dict:
    extra = {}
    for value in values:
        key, sep, raw = value.partition("=")
        if not sep:
            raise typer.BadParameter(f"expected KEY=VALUE, got {value!r}")
        try:
            extra[key] = json.loads(raw)
        except json.JSONDecodeError:
            extra[key] = raw
    return extra


@app.command()
def send(
    token: Annotated[str, typer.Argument(help="hex encoded device token")],
    pem: PemOption,
    passphrase: PassphraseOption,
    alert: Annotated[typing.Optional[str], typer.Option(help="alert text")] = None,
    badge: Annotated[typing.Optional[int], typer.Option(help="badge count")] = None,
    sound: Annotated[typing.Optional[str], typer.Option(help="sound name")] = None,
    extra: Annotated[
        typing.List[str],
        typer.Option(help="custom payload field as KEY=VALUE (JSON values allowed)"),
    ] = [],
    sandbox: Annotated[
        bool,
        typer.Option(
            "--sandbox/--production", envvar="PUSHGATE_SANDBOX", help="gateway to use"
        ),
    ] = False,
    lazy: Annotated[
        bool, typer.Option(help="deliver at a power-conserving time (framed format)")
    ] = False,
    retries: Annotated[int, typer.Option(help="attempts before giving up")] = protocol.DEFAULT_RETRIES,
    read_timeout: Annotated[
        float, typer.Option(help="seconds to wait for an error response")
    ] = transport.READ_TIMEOUT,
):
    """
    Send a single notification through the binary gateway
    """
    config = (
        apns.GatewayConfig.sandbox(pem, passphrase, read_timeout=read_timeout)
        if sandbox
        else apns.GatewayConfig.production(pem, passphrase, read_timeout=read_timeout)
    )
    notification = apns.PushNotification(
        token,
        alert=alert,
        badge=badge,
        sound=sound,
        extra=_parse_extra(extra),
        priority=protocol.PRIORITY_CONSERVE_POWER if lazy else protocol.PRIORITY_IMMEDIATE,
        retries=retries,
    )
    encoder = protocol.encode_framed if lazy else protocol.encode
    try:
        anyio.run(send_async, config, notification, encoder)
    except exceptions.PushError as e:
        logging.error(f"Failed to send notification: {e}")
        raise typer.Exit(1)
    logging.info(
        f"Sent notification {notification.identifier} to {config.host} "
        f"({'sandbox' if sandbox else 'production'})"
    )


async def send_async(
    config: apns.GatewayConfig,
    notification: apns.PushNotification,
    encoder: typing.Callable[[apns.PushNotification], bytes],
):
    async with apns.APNSClient(config, encoder=encoder) as client:
        await client.send(notification)


@app.command("check-cert")
def check_cert(pem: PemArgument, passphrase: PassphraseOption):
    """
    Check that a PEM file holds a certificate chain and the matching private key
    """
    try:
        bundle = apns.load_pem_file(pem, passphrase)
    except exceptions.CredentialError as e:
        logging.error(f"{pem}: {e}")
        raise typer.Exit(1)

    table = Table("#", "Subject", "Issuer", "Expires")
    for index, der in enumerate(bundle.chain):
        certificate = x509.load_der_x509_certificate(der)
        table.add_row(
            str(index),
            certificate.subject.rfc4514_string(),
            certificate.issuer.rfc4514_string(),
            certificate.not_valid_after_utc.isoformat(),
        )
    console.print(table)
    console.print(f"RSA key: {bundle.private_key.key_size} bits, matches leaf certificate")


def main():
    app()


if __name__ == "__main__":
    main()
