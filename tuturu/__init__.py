# PIN-based WebRTC signaling service
#
# Provides:
#  - Session registry pairing two peers per 6-digit access code
#  - Ephemeral TURN credentials (coturn REST API format)
#  - Redis-backed credential revocation (best effort)
#
# See tuturu/signaling/node.py for the app entry point.
