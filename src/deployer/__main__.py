from deployer.cli.app import app

app()
