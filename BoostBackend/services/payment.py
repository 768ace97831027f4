# BoostBackend/services/payment.py
# Substrate payment collaborator for boost contributions.
#
# pay(payer, amount) composes a transfer of `amount` planck to the treasury
# account, signs it with the keypair resolved for the payer and waits for
# inclusion (or finalization). The extrinsic hash is the payment reference.

from __future__ import annotations

import os
import logging
from typing import Optional

from substrateinterface import SubstrateInterface, Keypair
from substrateinterface.utils.ss58 import ss58_decode, ss58_encode

from .. import config
from ..boost.errors import PaymentError

log = logging.getLogger("payment")


def normalize_address(address: str) -> str:
    """
    Decode any valid SS58 and re-encode with our canonical prefix.
    Always store & return this canonical form.
    """
    pubkey_hex = ss58_decode(address)      # hex (no 0x)
    pubkey = bytes.fromhex(pubkey_hex)     # 32 bytes
    return ss58_encode(pubkey, config.SS58_FORMAT)


def get_substrate() -> SubstrateInterface:
    """
    Create a fresh SubstrateInterface client.

    Using a new client per call avoids reusing a dead WebSocket connection
    when the node restarts.
    """
    url = config.SUBSTRATE_WS_URL
    try:
        return SubstrateInterface(url=url, ss58_format=config.SS58_FORMAT, auto_reconnect=True)
    except Exception as e:
        log.exception("Failed to connect Substrate WS at %s: %s", url, e)
        raise PaymentError(f"cannot connect to node at {url}: {e}") from e


def get_signer(payer: Optional[str] = None) -> Keypair:
    """
    Resolve the signing Keypair for a payer.

    Resolution order:
    1) SUBSTRATE_SIGNER_URI_<PAYER> / SUBSTRATE_SIGNER_MNEMONIC_<PAYER>
    2) SUBSTRATE_SIGNER_URI / SUBSTRATE_SIGNER_MNEMONIC
    """
    uri = None
    mnemonic = None

    if payer:
        suffix = payer.upper()
        uri = os.getenv(f"SUBSTRATE_SIGNER_URI_{suffix}")
        mnemonic = os.getenv(f"SUBSTRATE_SIGNER_MNEMONIC_{suffix}")

    if not uri:
        uri = os.getenv("SUBSTRATE_SIGNER_URI")
    if not mnemonic:
        mnemonic = os.getenv("SUBSTRATE_SIGNER_MNEMONIC")

    try:
        if uri:
            return Keypair.create_from_uri(uri, ss58_format=config.SS58_FORMAT)
        if mnemonic:
            return Keypair.create_from_mnemonic(mnemonic, ss58_format=config.SS58_FORMAT)
    except Exception as e:
        raise PaymentError(f"invalid signer configuration: {e}") from e
    raise PaymentError("No signer configured (set SUBSTRATE_SIGNER_URI or SUBSTRATE_SIGNER_MNEMONIC)")


class SubstratePaymentClient:
    """Settles boost contributions on chain. Blocking; the admission gate bounds it with a timeout."""

    def __init__(
        self,
        treasury: str = config.TREASURY_ACCOUNT,
        pallet: str = config.PAYMENT_PALLET,
        call_function: str = config.PAYMENT_CALL,
        wait_for_finalization: bool = config.PAYMENT_WAIT_FINALIZATION,
    ):
        self.treasury = treasury
        self.pallet = pallet
        self.call_function = call_function
        self.wait_for_finalization = wait_for_finalization

    def pay(self, payer: str, amount: int) -> str:
        if not self.treasury:
            raise PaymentError("BOOST_TREASURY_ACCOUNT is not set")
        if amount <= 0:
            raise PaymentError(f"invalid amount {amount}")

        signer = get_signer(payer)
        try:
            payer_address = normalize_address(payer)
        except Exception as e:
            raise PaymentError(f"invalid payer address {payer!r}") from e
        # the transfer must come out of the payer's own account
        if signer.ss58_address != payer_address:
            log.error("[payment] signer %s does not match payer %s", signer.ss58_address, payer_address)
            raise PaymentError("No signing key configured for this wallet")

        substrate = get_substrate()

        try:
            call = substrate.compose_call(
                call_module=self.pallet,
                call_function=self.call_function,
                call_params={"dest": self.treasury, "value": int(amount)},
            )
            extrinsic = substrate.create_signed_extrinsic(call=call, keypair=signer)
        except Exception as e:
            log.exception("[payment] compose/sign failed payer=%s", payer)
            raise PaymentError(f"Failed to build transfer extrinsic: {e}") from e

        wait_args = {}
        if self.wait_for_finalization:
            wait_args["wait_for_finalization"] = True
        else:
            wait_args["wait_for_inclusion"] = True

        try:
            receipt = substrate.submit_extrinsic(extrinsic, **wait_args)
        except Exception as e:
            log.exception("[payment] submit_extrinsic(%s.%s) failed", self.pallet, self.call_function)
            raise PaymentError(f"Failed to submit transfer extrinsic: {e}") from e
        finally:
            try:
                substrate.close()
            except Exception:
                log.debug("[payment] substrate.close() failed", exc_info=True)

        if not getattr(receipt, "is_success", False):
            msg = getattr(receipt, "error_message", None)
            log.error("[payment] transfer extrinsic failed: %s", msg)
            raise PaymentError(f"transfer extrinsic failed: {msg or 'unknown error'}")

        tx_hash = getattr(receipt, "extrinsic_hash", None)
        if not tx_hash:
            raise PaymentError("transfer included but no extrinsic hash returned")

        log.info("[payment] transfer OK (hash=%s, payer=%s, amount=%s)", tx_hash, payer, amount)
        return str(tx_hash)
