# WebSocket signaling package
#
# Provides:
#  - Wire message schemas for the join/offer/answer/ice-candidate/leave protocol
#  - Per-connection protocol handler (glare-free peer notification)
#  - FastAPI app with /ws and /health endpoints
#
# See tuturu/signaling/node.py for the app entry point.
