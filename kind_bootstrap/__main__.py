from kind_bootstrap.bootstrap_kind import main

main()
