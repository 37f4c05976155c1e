from daemonbridge.app import main

main()
