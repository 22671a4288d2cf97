from farmroute import create_app

app = create_app()
