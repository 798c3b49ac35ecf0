from drivesync.cli import cli

cli()
