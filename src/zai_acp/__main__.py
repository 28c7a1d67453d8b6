from zai_acp.agent.agent import main_entry

raise SystemExit(main_entry())
