#!/usr/bin/env python3
"""Quick check of the device session, derivation and RPC connectivity.

Usage:
    python scripts/check_device.py                 # device checks only
    python scripts/check_device.py --rpc sepolia   # also probe an RPC endpoint
"""

import argparse
import asyncio
import logging
import sys

# Colors for output
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
RESET = "\033[0m"
CHECK = "✓"
CROSS = "✗"
WARN = "⚠"


def print_status(name: str, success: bool, message: str = ""):
    """Print status with color."""
    if success:
        print(f"  {GREEN}{CHECK}{RESET} {name}" + (f" - {message}" if message else ""))
    else:
        print(f"  {RED}{CROSS}{RESET} {name}" + (f" - {message}" if message else ""))


def print_warning(name: str, message: str = ""):
    """Print warning."""
    print(f"  {YELLOW}{WARN}{RESET} {name}" + (f" - {message}" if message else ""))


def check_config():
    """Load settings and show the redacted view."""
    print("\n⚙️ Checking Configuration...")

    from hwbridge.config import get_settings

    settings = get_settings()
    print_status("Load settings", True, f"environment={settings.environment}")
    print_status("Device backend", True, settings.device_backend)
    if settings.device_backend == "simulated" and not settings.has_seed:
        print_warning("Seed phrase", "Not configured, using the public test mnemonic")
    return True


async def check_device(session):
    """Connect, derive both default addresses and sign a probe message."""
    print("\n🔐 Checking Device Session...")

    from hwbridge.chains import ChainFamily
    from hwbridge.config import get_settings
    from hwbridge.derivation import parse_path
    from hwbridge.errors import HWBridgeError
    from hwbridge.signing.coordinator import recover_evm_address, split_evm_signature

    settings = get_settings()
    evm_path = parse_path(settings.default_evm_path, ChainFamily.EVM)
    solana_path = parse_path(settings.default_solana_path, ChainFamily.SOLANA)

    try:
        async with session.acquire(timeout=settings.device_connect_timeout * 2, operation="check") as device:
            print_status("Connect", True, f"generation {device.generation}")

            evm = await device.get_address(evm_path)
            print_status("EVM address", True, f"{evm.address} ({evm_path})")

            sol = await device.get_address(solana_path)
            print_status("Solana address", True, f"{sol.address} ({solana_path})")

            probe = b"hwbridge device check"
            signature = await device.sign(evm_path, probe)
            signer = recover_evm_address(probe, *split_evm_signature(signature))
            print_status("EVM signature", signer == evm.address, f"recovered {signer}")
    except HWBridgeError as e:
        print_status("Device", False, f"{e} ({e.hint})")
        return False
    finally:
        await session.close()

    print_status("Close", True, session.state.value)
    return True


async def check_rpc(network: str):
    """Probe fee and blockhash queries for one network."""
    print(f"\n🌐 Checking RPC ({network})...")

    from hwbridge.chainstate import RoutingChainState
    from hwbridge.errors import HWBridgeError

    chain_state = RoutingChainState()
    try:
        fees = await chain_state.get_fee_estimate(network)
        print_status("Fee estimate", True, str(fees))
        blockhash = await chain_state.get_latest_blockhash(network)
        print_status("Latest block", True, blockhash.blockhash)
    except HWBridgeError as e:
        print_status("RPC", False, f"{e} ({e.hint})")
        return False
    return True


async def main():
    parser = argparse.ArgumentParser(description="Check the hardware device pipeline")
    parser.add_argument("--rpc", metavar="NETWORK", help="Also probe the RPC endpoint of NETWORK")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    print("=" * 60)
    print("     HWBRIDGE DEVICE CHECK")
    print("=" * 60)

    from hwbridge.device.factory import get_device_session

    results = {}
    results["config"] = check_config()
    results["device"] = await check_device(get_device_session())
    if args.rpc:
        results["rpc"] = await check_rpc(args.rpc)

    # Summary
    print("\n" + "=" * 60)
    print("     SUMMARY")
    print("=" * 60)

    passed = sum(1 for v in results.values() if v)
    total = len(results)

    for name, success in results.items():
        status = f"{GREEN}{CHECK}{RESET}" if success else f"{RED}{CROSS}{RESET}"
        print(f"  {status} {name.title()}")

    print()
    if passed == total:
        print(f"  {GREEN}All {total} checks passed!{RESET}")
        return 0
    print(f"  {YELLOW}{passed}/{total} checks passed{RESET}")
    return 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
