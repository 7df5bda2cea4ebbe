"""epic-autopilot: autonomous development loop for backlog epics.

Picks epics from a markdown backlog, drives a development agent through
implementation and local review, submits a pull request, waits for the
external review and CI, fixes feedback and merges. State is persisted after
every phase so an interrupted run can be resumed.
"""

__version__ = "0.1.0"
