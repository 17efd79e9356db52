"""
Workflow trigger engine: events, conditions, actions and the dispatcher.

Import ``billing.workflow.engine`` for the engine itself; this package init
stays empty so the model layer can import ``events`` during app loading.
"""
