"""Meeting bot orchestration -- pool, admission, sessions and the worker.

Provides BrowserPool for amortizing browser processes, AdmissionController
for concurrency/memory gating and pressure reclamation, SessionRegistry for
the one-session-per-meeting map, BotSession for the per-meeting state
machine, and BotWorker which ties them together behind the public
operations.
"""
