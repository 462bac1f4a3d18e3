"""Attempt/run scheduler for coding-agent task execution.

One process owns one SQLite store. Admission (slot counting plus the budget
gate) runs inside a single ``BEGIN IMMEDIATE`` transaction, so concurrent
completions serialize on the database write lock instead of on in-process
locks:

- ``repository`` persists projects, tasks, runs, attempts, sessions, ledger.
- ``service`` owns the attempt/run state machine and dispatch.
- ``loop`` wakes on completions and sweeps periodically for recovery.
- ``rerun``, ``autopilot`` and ``planning`` build on the state machine.
"""
