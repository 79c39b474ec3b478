"""Funding strategies bringing freshly generated accounts to their target balance.

Both strategies share the same contract: every account is attempted, a
failing account is recorded and its cached balance reset to zero, and a final
refresh pass overwrites all cached balances with what the backend reports.
If any account failed, a single :exc:`FundingError` listing all of them is
raised after the refresh.
"""
from dataclasses import dataclass
from typing import List, Optional

import gevent.event
import structlog

from chain_forge import constants
from chain_forge.accounts import Account
from chain_forge.exceptions import (
    ChainForgeError,
    FundingError,
    FundingFailure,
    InsufficientFundsError,
    StartCancelled,
)
from chain_forge.rpc.base import ChainRpcClient, sleep_unless_cancelled

log = structlog.get_logger(__name__)


@dataclass
class SettlementParams:
    """How newly mined coins become spendable on a confirmation based chain.

    Defaults match Bitcoin regtest.
    """

    maturity_depth: int = constants.COINBASE_MATURITY
    initial_reward: float = constants.INITIAL_BLOCK_REWARD
    halving_interval: int = constants.HALVING_INTERVAL
    min_reward: float = constants.MIN_BLOCK_REWARD
    confirmation_blocks: int = constants.CONFIRMATION_BLOCKS
    fee_buffer: float = constants.FEE_BUFFER_PER_ACCOUNT

    def block_reward(self, height: int) -> float:
        return self.initial_reward / (2 ** (height // self.halving_interval))

    def coinbase_blocks_needed(self, amount: float) -> int:
        """Number of blocks whose rewards add up to at least `amount`, at least one."""
        accumulated = 0.0
        blocks = 0
        while accumulated < amount:
            reward = self.block_reward(blocks)
            if reward < self.min_reward:
                break
            accumulated += reward
            blocks += 1
        return max(blocks, 1)

    def blocks_to_mine(self, amount: float) -> int:
        return self.maturity_depth + self.coinbase_blocks_needed(amount)


class FundingCoordinator:
    """Funds accounts one by one and aggregates per-account failures."""

    def __init__(self, client: ChainRpcClient, cancel: Optional[gevent.event.Event] = None):
        self.client = client
        self.cancel = cancel

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            sleep_unless_cancelled(seconds, self.cancel)
        elif self.cancel is not None and self.cancel.is_set():
            raise StartCancelled("Operation cancelled")

    def prepare(self, accounts: List[Account], target: float) -> None:
        """Run once before any account is funded. Errors raised here are fatal."""

    def fund_account(self, index: int, account: Account, target: float) -> None:
        raise NotImplementedError

    def finalize(self, accounts: List[Account], failures: List[FundingFailure]) -> None:
        """Run once after all accounts were attempted."""

    def fund(self, accounts: List[Account], target: float) -> None:
        self.prepare(accounts, target)

        failures = []
        for index, account in enumerate(accounts):
            try:
                self.fund_account(index, account, target)
            except StartCancelled:
                raise
            except ChainForgeError as e:
                log.warning(
                    "Failed to fund account", index=index, address=account.address, error=str(e)
                )
                failures.append(FundingFailure(index, account.address, e))
                account.balance = 0.0

        self.finalize(accounts, failures)
        self.refresh_balances(accounts)

        if failures:
            raise FundingError(failures)

    def refresh_balances(self, accounts: List[Account]) -> None:
        for account in accounts:
            try:
                account.balance = self.client.get_balance(account.address)
            except ChainForgeError as e:
                log.warning("Failed to refresh balance", address=account.address, error=str(e))


class ConfirmationFundingCoordinator(FundingCoordinator):
    """Funding via mined, matured block rewards (Bitcoin regtest).

    Coins are mined to a throwaway wallet address, sent to every account,
    confirmed, and only then is each account's key imported into the wallet.
    """

    def __init__(
        self,
        client,
        cancel: Optional[gevent.event.Event] = None,
        params: SettlementParams = None,
        wallet_settle_delay: float = constants.WALLET_SETTLE_DELAY,
        send_settle_delay: float = constants.SEND_SETTLE_DELAY,
    ):
        super(ConfirmationFundingCoordinator, self).__init__(client, cancel)
        self.params = params or SettlementParams()
        self.wallet_settle_delay = wallet_settle_delay
        self.send_settle_delay = send_settle_delay
        self.mining_address: Optional[str] = None

    def prepare(self, accounts: List[Account], target: float) -> None:
        self.client.ensure_wallet()
        self.sleep(self.wallet_settle_delay)
        self.mining_address = self.client.new_address("mining")

        count = len(accounts)
        needed = count * target
        fee_buffer = count * self.params.fee_buffer
        blocks = self.params.blocks_to_mine(needed + fee_buffer)
        log.info("Mining blocks for funding", blocks=blocks, needed=needed)
        self.client.mine_blocks(blocks, self.mining_address)
        self.sleep(self.wallet_settle_delay)

        available = self.client.wallet_balance()
        if available < needed + fee_buffer:
            raise InsufficientFundsError(
                f"Insufficient wallet balance: have {available}, need {needed + fee_buffer} "
                f"(short by {needed + fee_buffer - available})"
            )

    def fund_account(self, index: int, account: Account, target: float) -> None:
        if target <= 0:
            return
        txid = self.client.send_to(account.address, target)
        log.debug("Sent funds", index=index, address=account.address, txid=txid)
        self.sleep(self.send_settle_delay)

    def finalize(self, accounts: List[Account], failures: List[FundingFailure]) -> None:
        self.client.mine_blocks(self.params.confirmation_blocks, self.mining_address)
        self.sleep(self.wallet_settle_delay)

        failed = {failure.index for failure in failures}
        for index, account in enumerate(accounts):
            if index in failed:
                continue
            try:
                self.client.import_spend_key(account.address, account.secret, f"account-{index}")
            except ChainForgeError as e:
                log.warning("Failed to import account key", index=index, error=str(e))
                failures.append(FundingFailure(index, account.address, e))
                account.balance = 0.0


class FaucetFundingCoordinator(FundingCoordinator):
    """Funding via the backend's faucet (Solana test validator)."""

    def __init__(
        self,
        client: ChainRpcClient,
        cancel: Optional[gevent.event.Event] = None,
        attempts: int = constants.FAUCET_ATTEMPTS,
        retry_delay: float = constants.FAUCET_RETRY_DELAY,
        account_delay: float = constants.FAUCET_ACCOUNT_DELAY,
    ):
        super(FaucetFundingCoordinator, self).__init__(client, cancel)
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.account_delay = account_delay

    def fund_account(self, index: int, account: Account, target: float) -> None:
        try:
            current = self.client.get_balance(account.address)
            if current >= target:
                log.info("Balance already sufficient", index=index, balance=current)
                return

            for attempt in range(1, self.attempts + 1):
                try:
                    description = self.client.set_balance(account.address, target)
                except ChainForgeError as e:
                    if attempt == self.attempts:
                        raise
                    log.debug("Faucet request failed, retrying", index=index, error=str(e))
                    self.sleep(self.retry_delay)
                else:
                    log.info("Funded account", index=index, result=description)
                    return
        finally:
            self.sleep(self.account_delay)
