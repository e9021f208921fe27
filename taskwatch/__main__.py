from taskwatch.main import main

main()
