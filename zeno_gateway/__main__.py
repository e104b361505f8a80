from zeno_gateway.server import main

main()
