from lazy_publish.cli import cli

cli()
