"""Rule engine services.

- query_client.py (expression evaluation against the query backend)
- rules.py / rule_loader.py / templates.py (rule definitions and rule files)
- alert_state.py (alert instance lifecycle)
- materializer.py (recording rule output)
- rule_group.py / registry.py / scheduler.py (evaluation loop and hot reload)
- notifier.py (alert transitions to Alertmanager / event log)
- engine_metrics.py / bootstrap.py (self-metrics and wiring)
- rules_service.py / alerts_service.py (API read models)
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.
