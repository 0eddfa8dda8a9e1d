"""wsagent subcommands: one module per subcommand with add_parser() and run()."""
