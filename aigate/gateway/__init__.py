"""AI Admission Gateway Layer.

Admission control in front of upstream AI vendors:
  - Request Key Resolver (user or client-IP identity)
  - Fixed-Window Rate Limiter (per endpoint class and key)
  - Usage Guard (quota pre-check, best-effort post-success increment)
  - Provider Resolver (env override, cached settings store, default)
  - Timeout Wrapper and Error Classifier (one public error contract)
  - Vendor-Specific Adapters (OpenAI, Anthropic, Gemini)
"""
