"""
Handoff Package
===============

Back-channel credential delivery for products that must never receive the
token through the browser.

Modules:
- broker: server-to-server session establishment (HandoffBroker)
- store: single-use HandoffTicket storage
- routes: POST /handoff/redeem (handoff_router)
"""
