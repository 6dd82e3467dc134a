"""Real-time alert & adherence engine for elder care.

The package keeps presence, notification fan-out, the emergency lifecycle and
medication scheduling isolated from the HTTP edge so each can be tested on
its own with injected clocks, stores and channels.
"""
