"""SCRAM quantification job orchestration.

A request is turned into one job, or into a batch of sibling "sequence jobs"
when it is decomposed per event-tree sequence. Each job gets a hierarchical
identifier (``<root>-<index>`` for batch members), its input is persisted to
the artifact store, a QUEUED row is written to the status store, and a work
item is published on the dispatch channel.

Workers report back through the same status store. Reads (status, output,
stats) are answered from the store; batch roots are resolved from the
identifier scheme alone, so a batch never needs a separate membership index.
"""
