"""
Gateway Package

Front-end facing wrappers around the agent core:

- session_guard: Single-flight send per conversation, safety watchdog,
  optimistic message ledger and persistence side effects
"""
