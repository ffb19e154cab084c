# Agelum: markdown-backed project management and browser test tooling
#
# Components:
#   schema.py        - Work item model (WorkItem, ItemKind, per-kind states)
#   markdown.py      - Frontmatter parsing, file naming, heading rewrites
#   layout.py        - .agelum directory convention and legacy migration
#   store.py         - File-backed CRUD for tasks, epics, ideas and plans
#   settings.py      - User settings and project path resolution
#   config.py        - Server configuration (YAML)
#   process.py       - Dev server preview process manager
#   browser_tests.py - Browser test scenarios, groups, steps, executions
#   runner.py        - Test execution and output analysis
#   recorder.py      - AI-assisted step recording
#   annotations.py   - Screenshot annotation rendering and instructions
#   reports.py       - Bug report intake (screenshot + annotations -> task)
#   events.py        - SQLite activity log
#   watcher.py       - Filesystem watcher feeding the activity log
#   server.py        - Flask JSON API
#   cli.py           - `agelum` command line client

__version__ = "0.4.0"
