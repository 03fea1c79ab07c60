# splgiver

`splgiver` hands out tokens to presale buyers on a vesting schedule.
Each buyer belongs to a group. A group sets the token price, the share
unlocked straight away, and how much more unlocks after each interval.
The package works out every buyer's unlock schedule and stores it in
SQLite. It then runs the schedule entries as they come due and records
each transfer as a transaction.

You supply the transfer itself as a callable, so the package does not
depend on any chain client.

## Modules

- `splgiver.models`: the records `Buyer`, `Group`, `Schedule` and
  `Transaction`, the `Status` enum (`pending`, `success`, `failed`),
  `validate_wallet`, `load_buyers_from_csv` and `load_groups_from_yaml`.
- `splgiver.db`: `Database`, a SQLite store for all four kinds of
  record, and `DatabaseError`.
- `splgiver.distribution`: schedule planning (`plan_unlocks`,
  `make_schedules`) and payout (`to_base_units`,
  `try_transfer_with_retries`, `process_schedule`, `run_due_schedules`,
  `run_schedule_runner`), plus `TransferError`.

## Input files

Groups come from a YAML list:

```yaml
- id: 1
  spl_share_percent: 0.4
  spl_price: 0.001
  initial_unlock_percent: 0.1
  unlock_interval_seconds: 86400
  unlock_percent_per_interval: 0.15
```

`load_groups_from_yaml(path, tokens_amount)` reads this file. It sets
each group's `spl_total` to `spl_share_percent * tokens_amount`. If an
entry is missing a field or has a value of the wrong type, it raises
`ValueError`.

Buyers come from a CSV file with a header row:

```csv
wallet,paid_sol,group_id
11111111111111111111111111111111,150.0,1
```

The columns `received_spl`, `received_percent`, `pending_spl`, `error`,
`created_at` and `updated_at` are optional. `load_buyers_from_csv(path)`
checks each wallet with `validate_wallet`, which accepts only a base58
string that decodes to 32 bytes. Rows that cannot be read are logged and
skipped. If no buyer is left, it raises `ValueError`.

## Usage

```python
from datetime import datetime, timezone

from splgiver.db import Database
from splgiver.distribution import make_schedules, run_due_schedules
from splgiver.models import load_buyers_from_csv, load_groups_from_yaml


def transfer(wallet: str, amount: int) -> None:
    ...  # send `amount` base units to `wallet`; raise on failure


with Database("sqlite://spl_giver.db") as db:
    for group in load_groups_from_yaml("groups.yaml", 1_000_000_000):
        db.save_group(group)
    for buyer in load_buyers_from_csv("buyers_list.csv"):
        db.save_buyer(buyer)

    now = datetime.now(timezone.utc).replace(tzinfo=None)
    make_schedules(db, now)
    run_due_schedules(db, transfer, now, 9)
```

`Database` takes a file path or a `sqlite:` / `sqlite://` URL. Any
`?query` part is dropped, and an empty path opens an in-memory database.
The tables are created when the database is opened. `save_group` and
`save_buyer` leave an existing id or wallet untouched and return `None`.
`save_group` stores `spl_total` truncated to a whole number. A failed
query, or a lookup such as `get_group` or `get_buyer_by_wallet` that
finds nothing, raises `DatabaseError`.

## How schedules are built

For each buyer, the token total is `paid_sol / spl_price`
(`Buyer.total_spl`).

- If the buyer has received nothing yet, an initial unlock of
  `initial_unlock_percent` is scheduled for `now`.
- After that, one unlock of `unlock_percent_per_interval` is scheduled
  every `unlock_interval_seconds`, until 100% is reached. The last
  unlock is capped at the amount that remains.
- A schedule's `percent` is the total share unlocked once it is paid.
  A total that already has a schedule entry is not scheduled again, so
  `make_schedules` can be run again after a restart.
- If tokens remain but `unlock_percent_per_interval` is not positive,
  a `ValueError` is raised.

`plan_unlocks(buyer, group, existing_percents, now)` returns the same
plan without touching the database.

## Paying out

`run_due_schedules(db, transfer, now, token_decimals)` takes every
pending schedule at or before `now` and hands it to `process_schedule`.
The amount is converted with `to_base_units`: it is multiplied by
`10 ** token_decimals`, rounded half away from zero, and clamped to the
range 0 to 2**64 - 1. The default is 9 decimals.

`try_transfer_with_retries` calls `transfer(wallet, amount)` up to 4
times, with a 2-second pause after each failure. If every attempt fails,
it raises `TransferError`. The result is then recorded as follows:

- On success, a `success` transaction is saved and the buyer's
  `received_spl`, `received_percent` and `pending_spl` are updated.
  The schedule is then marked `success`.
- On failure, a `failed` transaction with the error message is saved,
  and the schedule is marked `failed`.
- If the schedule's group or buyer is missing, the schedule is marked
  `failed` and `process_schedule` returns `None`.

`run_schedule_runner(db, transfer, interval, token_decimals)` repeats
`run_due_schedules` every `interval` seconds, without end. If a
`DatabaseError` occurs while fetching due schedules, it is logged and
raised again.

## What it does not do

- It has no command-line program and no HTTP server. You drive it from
  your own Python code.
- It does not talk to any blockchain. It does not create token accounts
  or sign transactions. All of that belongs in the `transfer` callable
  you pass in.
- It does not check that a group holds enough tokens to cover its
  buyers.