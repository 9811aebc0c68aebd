# coinplan

Building blocks for choosing the inputs of a transaction and for planning how to
spend taproot outputs:

- **Coin selection** (`coinplan.coin_selector`). `CoinSelector` chooses inputs from
  a list of `WeightedValue` candidates. It keeps choosing until the target value,
  the target feerate, the minimum absolute fee and the drain (change) limits are all
  met. `finish()` returns a `Selection`. The `Selection` lists the excess strategies
  it can use (`ExcessStrategyKind.TO_FEE`, `TO_RECIPIENT`, `TO_DRAIN`).
- **Branch and bound** (`coinplan.bnb`). `coin_select_bnb` searches for a selection
  that needs no change output and has the least waste.
- **Keys** (`coinplan.keys`). `DescriptorKey` and `KeySource` work out the
  derivation path by which one key derives another.
- **Spending plans** (`coinplan.plan`, `coinplan.planner`, `coinplan.template`).
  `plan_satisfaction` works out how a taproot descriptor (`TrDescriptor`) can be
  spent with the keys, hash images and timelocks held in an `Assets`. The `Plan` it
  returns does the following:
  - reports the expected satisfaction weight;
  - lists the signatures and pre-images it still needs;
  - builds the final witness from a `SatisfactionMaterial`.

The package has no dependencies beyond the standard library.

## Installation

```
pip install .
```

To run the test suite, install the `test` extra, which adds pytest:

```
pip install ".[test]"
pytest
```

## Coin selection

```python
from coinplan.coin_selector import CoinSelector, CoinSelectorOpt, WeightedValue

candidates = [WeightedValue(value=v, weight=100, input_count=1, is_segwit=False)
              for v in (50_000, 120_000, 300_000)]
opts = CoinSelectorOpt(
    target_value=150_000, max_extra_target=0, target_feerate=0.25,
    long_term_feerate=None, min_absolute_fee=0, base_weight=200,
    drain_weight=124, spend_drain_weight=272, min_drain_value=300,
)

selector = CoinSelector(candidates, opts)
selection = selector.select_until_finished()
kind, strategy = selection.best_strategy()
print(selection.selected, kind, strategy.fee, strategy.drain_value)
```

`select_until_finished()` tries the current selection first. If that is not enough,
it adds unselected candidates in index order until the selection can finish.

If the coins cannot meet a constraint, `finish()` and `select_until_finished()`
raise `SelectionError`. The error has three attributes:

- `selected`: the amount selected;
- `missing`: the amount still missing;
- `constraint`: the `SelectionConstraint` that failed.

`CoinSelectorOpt.fund_outputs(txouts, drain_output, drain_satisfaction_weight)`
builds options for paying a list of `TxOut`s. It works out the base weight and the
drain weight from the outputs and uses a feerate of 0.25 sats per weight unit.

## Branch and bound

```python
from datetime import timedelta
from coinplan.bnb import coin_select_bnb

result = coin_select_bnb(10_000, CoinSelector(candidates, opts))
if result is not None:
    selection = result.finish()

timed = coin_select_bnb(timedelta(seconds=1), CoinSelector(candidates, opts))
```

The limit is either a number of rounds or a `timedelta` that bounds the search time.
`coin_select_bnb` returns a new selector that holds the best selection found, or
`None` if it found no solution within the limit.

## Spending plans

```python
from coinplan.keys import DescriptorKey
from coinplan.plan import Assets, Complete, TrDescriptor
from coinplan.planner import plan_satisfaction
from coinplan.template import SatisfactionMaterial

key = DescriptorKey(public_key=bytes(32))
plan = plan_satisfaction(TrDescriptor(internal_key=key), Assets(keys=[key]))

print(plan.expected_weight())
print(plan.requirements().signatures.kind)   # SignatureKind.TAP_KEY

state = plan.try_complete(SatisfactionMaterial(schnorr_sigs={key: bytes(64)}))
assert isinstance(state, Complete)
print(state.final_script_witness)
```

If an asset key can derive the internal key, the planner takes the key path. If not,
it plans each script leaf that carries a parsed `Term` and picks the cheapest. A
leaf plan carries the timelocks it needs, which `required_locktime()`,
`required_sequence()` and `min_version()` report.

## What the package does not do

- It has no command-line program.
- It does not store wallet state.
- It does not scan or sync a blockchain.
- It does not broadcast transactions.
- It does not create signatures. Signatures and hash pre-images must be produced
  elsewhere and passed in through `SatisfactionMaterial`.
- Planning covers taproot descriptors only. `plan_satisfaction` raises `ValueError`
  for any other descriptor.
- `plan_steps` raises `ValueError` for the `andor`, `or_b`, `or_d`, `or_c`,
  `thresh`, `multi` and `multi_a` fragments.