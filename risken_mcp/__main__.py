from .http_server import main

main()
