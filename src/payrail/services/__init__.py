"""Services: daily limits, balance reconciliation and confirmation."""
