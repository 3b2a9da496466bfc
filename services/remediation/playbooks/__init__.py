"""Built-in remediation playbooks.

Each module exposes a ``PLAYBOOK_ENTRY`` picked up by
:meth:`services.remediation.registry.PlaybookRegistry.discover`. Step
executors only orchestrate: the actual work is done by clients injected
through ``StepContext.services``.
"""
