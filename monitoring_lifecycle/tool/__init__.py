"""Command line tool for monitoring-lifecycle.

```
monitoring-lifecycle --log-level INFO validate --config run.yaml
```
"""
