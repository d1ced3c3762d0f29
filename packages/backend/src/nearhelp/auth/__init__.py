"""Authentication.

Learn: Tokens are issued by the surrounding marketplace. This service
only verifies them and turns the subject claim into a CurrentIdentity,
both for HTTP routes (Bearer header) and for the WebSocket (?token=).
"""
