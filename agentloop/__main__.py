from agentloop.interfaces.cli import main

main()
