import pytest
from web3 import Web3

from portfolio_sim.contracts import G3M, MAX_ALLOWANCE, LiquidExchange, Token
from portfolio_sim.ledger import Ledger, LedgerError, derive_address, event_topic


def _setup_tokens(ledger):
    admin = ledger.account("admin")
    x = ledger.deploy(Token, "Token X", "X", label="x", sender=admin)
    y = ledger.deploy(Token, "Token Y", "Y", label="y", sender=admin)
    return admin, x, y


def test_addresses_are_checksummed_and_deterministic():
    a, b = Ledger(), Ledger()
    assert a.account("alice") == b.account("alice")
    assert a.account("alice") != a.account("bob")
    assert Web3.is_checksum_address(a.account("alice"))
    assert derive_address("contract", "lex") != derive_address("account", "lex")


def test_event_topic_matches_erc20_transfer():
    assert event_topic("Transfer(address,address,uint256)") == (
        "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
    )


def test_blocks_advance_by_timestep():
    ledger = Ledger()
    assert ledger.current_block().number == 0
    ledger.advance_block(15)
    block = ledger.advance_block(15)
    assert (block.number, block.timestamp) == (2, 30)
    with pytest.raises(LedgerError):
        ledger.advance_block(0)


def test_only_deployer_can_mint():
    ledger = Ledger()
    admin, x, _ = _setup_tokens(ledger)
    alice = ledger.account("alice")
    ledger.call(x, "mint", alice, 100.0, sender=admin)
    assert ledger.view(x, "balance_of", alice) == 100.0

    with pytest.raises(LedgerError, match="only the token admin"):
        ledger.call(x, "mint", alice, 100.0, sender=alice)
    assert ledger.view(x, "balance_of", alice) == 100.0


def test_transfer_from_respects_allowance():
    ledger = Ledger()
    admin, x, _ = _setup_tokens(ledger)
    alice, bob = ledger.account("alice"), ledger.account("bob")
    ledger.call(x, "mint", alice, 10.0, sender=admin)
    ledger.call(x, "approve", bob, 4.0, sender=alice)

    ledger.call(x, "transfer_from", alice, bob, 3.0, sender=bob)
    assert ledger.view(x, "allowance", alice, bob) == 1.0
    with pytest.raises(LedgerError, match="allowance"):
        ledger.call(x, "transfer_from", alice, bob, 3.0, sender=bob)

    ledger.call(x, "approve", bob, MAX_ALLOWANCE, sender=alice)
    ledger.call(x, "transfer_from", alice, bob, 5.0, sender=bob)
    assert ledger.view(x, "allowance", alice, bob) == MAX_ALLOWANCE
    assert ledger.view(x, "balance_of", bob) == 8.0


def test_failed_call_rolls_back_state_and_events():
    ledger = Ledger()
    admin, x, y = _setup_tokens(ledger)
    lp = ledger.account("lp")
    pool = ledger.deploy(G3M, x.address, y.address, 0.5, 0.003, label="pool", sender=admin)
    # X is funded and approved, Y is not funded at all
    ledger.call(x, "mint", lp, 10.0, sender=admin)
    ledger.call(x, "approve", pool.address, MAX_ALLOWANCE, sender=lp)
    ledger.call(y, "approve", pool.address, MAX_ALLOWANCE, sender=lp)
    stream = ledger.subscribe_events(x, from_start=False)

    with pytest.raises(LedgerError, match="balance"):
        ledger.call(pool, "init_pool", 5.0, 1.0, sender=lp)

    assert ledger.view(x, "balance_of", lp) == 10.0
    assert ledger.view(x, "balance_of", pool.address) == 0.0
    assert ledger.view(pool, "reserves") == (0.0, 0.0)
    assert stream.drain() == []
    with pytest.raises(LedgerError, match="not initialized"):
        ledger.view(pool, "spot_price")


def test_pool_swaps_move_along_invariant():
    ledger = Ledger()
    admin, x, y = _setup_tokens(ledger)
    lp, trader = ledger.account("lp"), ledger.account("trader")
    pool = ledger.deploy(G3M, x.address, y.address, 0.4, 0.0, label="pool", sender=admin)
    for who in (lp, trader):
        for token in (x, y):
            ledger.call(token, "mint", who, 1_000.0, sender=admin)
            ledger.call(token, "approve", pool.address, MAX_ALLOWANCE, sender=who)

    amount_y = ledger.call(pool, "init_pool", 10.0, 2.0, sender=lp)
    assert amount_y == pytest.approx(2.0 * 10.0 * 0.6 / 0.4)
    assert ledger.view(pool, "spot_price") == pytest.approx(2.0)

    k0 = ledger.view(pool, "invariant")
    out = ledger.call(pool, "swap_x_for_y", 1.0, sender=trader)
    assert out > 0
    assert ledger.view(pool, "invariant") == pytest.approx(k0)
    assert ledger.view(pool, "spot_price") < 2.0


def test_only_controller_sets_weight():
    ledger = Ledger()
    admin, x, y = _setup_tokens(ledger)
    pool = ledger.deploy(G3M, x.address, y.address, 0.5, 0.003, label="pool", sender=admin)
    with pytest.raises(LedgerError, match="controller"):
        ledger.call(pool, "set_weight_x", 0.7, sender=ledger.account("mallory"))
    with pytest.raises(LedgerError, match="weight_x"):
        ledger.call(pool, "set_weight_x", 1.0, sender=admin)
    ledger.call(pool, "set_weight_x", 0.7, sender=admin)
    assert ledger.view(pool, "weights") == pytest.approx((0.7, 0.3))


def test_lex_swaps_at_posted_price():
    ledger = Ledger()
    admin, x, y = _setup_tokens(ledger)
    trader = ledger.account("trader")
    lex = ledger.deploy(LiquidExchange, x.address, y.address, 2.0, label="lex", sender=admin)
    ledger.call(x, "mint", lex.address, 100.0, sender=admin)
    ledger.call(y, "mint", trader, 100.0, sender=admin)
    ledger.call(y, "approve", lex.address, MAX_ALLOWANCE, sender=trader)

    assert ledger.call(lex, "swap", y.address, 10.0, sender=trader) == pytest.approx(5.0)
    assert ledger.view(x, "balance_of", trader) == pytest.approx(5.0)
    with pytest.raises(LedgerError, match="unknown token"):
        ledger.call(lex, "swap", ledger.account("nobody"), 1.0, sender=trader)
    with pytest.raises(LedgerError, match="price admin"):
        ledger.call(lex, "set_price", 3.0, sender=trader)
    with pytest.raises(LedgerError, match="invalid price"):
        ledger.call(lex, "set_price", -1.0, sender=admin)


def test_subscribe_from_start_and_from_head():
    ledger = Ledger()
    admin, x, y = _setup_tokens(ledger)
    alice = ledger.account("alice")
    ledger.call(x, "mint", alice, 1.0, sender=admin)

    replay = ledger.subscribe_events(x)
    head = ledger.subscribe_events(x, from_start=False)
    ledger.call(x, "mint", alice, 2.0, sender=admin)
    ledger.call(y, "mint", alice, 3.0, sender=admin)

    assert [e.payload["amount"] for e in replay.drain()] == [1.0, 2.0]
    assert [e.payload["amount"] for e in head.drain()] == [2.0]
    assert replay.drain() == []
    event = ledger.subscribe_events(y).drain()[0]
    assert event.topic == event_topic(Token.EVENTS["Transfer"])
    assert event.label == "y"

    with pytest.raises(LedgerError):
        ledger.resolve("missing")


def test_dispatch_rejects_private_and_unknown_methods():
    ledger = Ledger()
    admin, x, _ = _setup_tokens(ledger)
    with pytest.raises(LedgerError, match="no public method"):
        ledger.call(x, "_move", admin, admin, 0.0, sender=admin)
    with pytest.raises(LedgerError, match="no public method"):
        ledger.call(x, "burn", 1.0, sender=admin)
    with pytest.raises(LedgerError, match="already deployed"):
        ledger.deploy(Token, "Again", "X", label="x", sender=admin)
