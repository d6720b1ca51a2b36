"""auth/ -- Authentication package for Gatekeeper.

Users, devices, sessions, credentials, risk scoring, MFA and the login
decision pipeline.

Layer rule: auth/ imports from core/, ephemeral/ and policy/ (the pipeline
consults the conditional access evaluator). It does NOT import from api/,
federation/ or notify/. api/ and federation/ import from auth/, not the
other way around.
"""
